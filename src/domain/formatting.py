KB_PER_MB = 1_000
KB_PER_GB = 1_000_000


def format_average_size(total_kb: int, repo_count: int) -> str:
    """
    Formats the average repository size with a human-scaled unit.

    Sizes reported by GitHub are in KB. With no repositories the average is
    undefined and "0 KB" is returned. Thresholds are checked against the
    rounded value, so a unit never prints as 1000 of itself.
    """
    if repo_count <= 0:
        return "0 KB"

    avg = total_kb / repo_count

    kb = round(avg, 3)
    if kb < KB_PER_MB:
        if float(kb).is_integer():
            return f"{int(kb)} KB"
        return f"{kb:g} KB"

    mb = round(avg / KB_PER_MB, 3)
    if mb < KB_PER_MB:
        return f"{mb:.3f} MB"
    return f"{avg / KB_PER_GB:.3f} GB"
