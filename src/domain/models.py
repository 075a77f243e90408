from enum import Enum
from typing import List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class ForkFilter(str, Enum):
    """Which repositories take part in the aggregation."""
    INCLUDE_ALL = "includeAll"
    EXCLUDE_FORKS = "excludeForks"


def build_cache_key(username: str, fork_filter: ForkFilter) -> str:
    # GitHub logins are case-insensitive, so "Octocat" and "octocat" share a cache entry.
    return f"aggregated-stats:{username.lower()}:{fork_filter.value}"


class RepoRecord(BaseModel):
    """
    Immutable domain model holding the stats-relevant fields of one repository.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Full name of the repository (owner/name)")
    is_fork: bool = Field(False, description="Whether the repository is a fork")
    stars: int = Field(0, ge=0, description="Total number of stargazers")
    forks: int = Field(0, ge=0, description="Total number of forks")
    size_kb: int = Field(0, ge=0, description="Repository size as reported by GitHub, in KB")
    languages_url: str = Field("", description="URL of the per-repository language breakdown")


class PageEntry(BaseModel):
    """One cached page of a user's repository listing and the ETag it was served with."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(..., ge=1)
    etag: str = Field(..., min_length=1)


class PageFresh(BaseModel):
    """Outcome of a page fetch that returned content (first fetch or changed page)."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(..., ge=1)
    repos: List[RepoRecord] = Field(default_factory=list)
    etag: str = Field(..., min_length=1)
    is_last_page: bool = Field(..., description="True when the Link header has no rel=\"next\"")
    last_page: Optional[int] = Field(None, description="Last page number advertised upstream, if known")


class PageNotModified(BaseModel):
    """Outcome of a conditional page fetch confirming the cached data is still valid."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(..., ge=1)
    last_page: Optional[int] = None


PageOutcome = Union[PageFresh, PageNotModified]


class LanguageStat(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    byte_count: int = Field(..., ge=0)


class AggregateResult(BaseModel):
    """
    The computed answer for one cache key. Serializes with camelCase keys
    (``model_dump(by_alias=True)``), which is also how it is persisted.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    repo_count: int = Field(0, ge=0)
    star_total: int = Field(0, ge=0)
    fork_total: int = Field(0, ge=0)
    avg_repo_size: str = "0 KB"
    languages: List[LanguageStat] = Field(default_factory=list)
    missing_languages: List[str] = Field(
        default_factory=list,
        description="Repositories whose language breakdown could not be fetched",
    )
