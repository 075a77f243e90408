"""
Abstract contracts the application layer depends on.

The orchestrator only talks to these, so the GitHub client and the
PostgreSQL store can be swapped for fakes in tests.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiohttp

from src.domain.models import AggregateResult, PageEntry, PageOutcome, RepoRecord


class PageSource(ABC):
    """Contract for the paginated upstream holding a user's repositories."""

    @abstractmethod
    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        username: str,
        page_number: int,
        etag: Optional[str] = None,
    ) -> PageOutcome:
        """
        Fetch one page of the user's repositories, conditionally when an ETag is given.

        Raises:
            UserNotFoundException: the user does not exist.
            TransientUpstreamException: network or upstream failure.
        """
        ...

    @abstractmethod
    async def fetch_languages(self, session: aiohttp.ClientSession, languages_url: str) -> Dict[str, int]:
        """Return the language name -> byte count breakdown of one repository."""
        ...


class CacheStore(ABC):
    """Contract for the persistent cache of pages, page data and aggregates."""

    @abstractmethod
    async def get_page_list(self, key: str) -> List[PageEntry]:
        """Cached pages for the key in ascending page order; empty if never cached."""
        ...

    @abstractmethod
    async def get_page_data(self, key: str, etag: str) -> Optional[List[RepoRecord]]:
        ...

    @abstractmethod
    async def get_aggregate(self, key: str) -> Optional[AggregateResult]:
        ...

    @abstractmethod
    async def commit(
        self,
        key: str,
        page_list: List[PageEntry],
        page_data: Dict[str, List[RepoRecord]],
        aggregate: AggregateResult,
    ) -> None:
        """
        Replace the page list, page data and aggregate for the key as one unit.
        Page data whose ETag is not referenced by the new page list is dropped.
        """
        ...
