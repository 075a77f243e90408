from typing import Optional


class StatsException(Exception):
    """Base exception for all aggregated-stats errors."""
    pass

class UserNotFoundException(StatsException):
    """Raised when the requested GitHub user (or resource) does not exist upstream."""
    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"GitHub resource not found: {resource}")

class UpstreamException(StatsException):
    """Raised when GitHub answers with an unexpected, non-success status."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

class TransientUpstreamException(UpstreamException):
    """Raised when GitHub is unreachable or keeps failing after all retries."""
    pass

class RateLimitExceededException(TransientUpstreamException):
    """Raised when the GitHub REST rate limit is hit."""
    def __init__(self, reset_at: str, message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}", status=403)

class DatabaseException(StatsException):
    """Raised when a cache store operation fails."""
    pass
