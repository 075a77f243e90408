import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiohttp

from src.application.aggregator import Aggregator
from src.application.concurrency import gather_or_cancel
from src.domain.interfaces import CacheStore, PageSource
from src.domain.models import (
    AggregateResult,
    ForkFilter,
    PageEntry,
    PageFresh,
    PageNotModified,
    RepoRecord,
    build_cache_key,
)

logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming GitHub's servers
CONNECTOR_LIMIT = 10


@dataclass(frozen=True)
class ResolvedPage:
    """A page of the current request's working copy, reused from cache or freshly fetched."""
    page_number: int
    etag: str
    repos: List[RepoRecord]


class StatsService:
    """
    Answers aggregated-stats queries for a user, keeping upstream traffic low.

    Cached pages are revalidated with their ETags; only changed or newly
    appeared pages are downloaded. When nothing changed the stored aggregate
    is returned as is, otherwise it is recomputed and the whole cache entry
    is replaced in one commit.
    """

    def __init__(
            self,
            github_client: PageSource,
            cache_store: CacheStore,
            aggregator: Optional[Aggregator] = None,
    ):
        self.github_client = github_client
        self.cache_store = cache_store
        self.aggregator = aggregator or Aggregator(github_client)
        # Serializes refreshes of the same key within this process.
        # A key's lock lives only while someone holds or waits on it.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def get_aggregated_stats(
        self,
        username: str,
        fork_filter: ForkFilter = ForkFilter.INCLUDE_ALL,
    ) -> AggregateResult:
        """
        Returns the aggregated stats of every repository owned by ``username``.

        Raises:
            UserNotFoundException: the user does not exist; the cache is left untouched.
            TransientUpstreamException: GitHub failed; the cache is left untouched.
        """
        key = build_cache_key(username, fork_filter)

        async with self._key_lock(key):
            async with aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
            ) as session:
                return await self._resolve(session, key, username, fork_filter)

    async def _resolve(
        self,
        session: aiohttp.ClientSession,
        key: str,
        username: str,
        fork_filter: ForkFilter,
    ) -> AggregateResult:
        cached_entries = await self.cache_store.get_page_list(key)

        if cached_entries and not self._is_well_formed(cached_entries):
            logger.warning(f"Discarding malformed page list for '{key}'.")
            cached_entries = []

        if not cached_entries:
            logger.info(f"No cache entry for '{key}'. Fetching all pages.")
            pages = await self._fetch_all_pages(session, username)
            entirely_fresh = False
        else:
            pages, entirely_fresh = await self._revalidate(session, key, username, cached_entries)

        if entirely_fresh:
            cached_result = await self.cache_store.get_aggregate(key)
            if cached_result is not None:
                logger.info(f"All {len(pages)} cached pages of '{key}' are fresh.")
                return cached_result
            logger.warning(f"Aggregate missing for '{key}'. Recomputing.")

        result = await self.aggregator.aggregate(session, [page.repos for page in pages], fork_filter)

        await self.cache_store.commit(
            key,
            [PageEntry(page_number=page.page_number, etag=page.etag) for page in pages],
            {page.etag: page.repos for page in pages},
            result,
        )
        logger.info(f"Refreshed '{key}': {result.repo_count} repositories over {len(pages)} pages.")
        return result

    @staticmethod
    def _is_well_formed(entries: Sequence[PageEntry]) -> bool:
        numbers = [entry.page_number for entry in entries]
        return numbers == list(range(1, len(numbers) + 1))

    async def _fetch_all_pages(self, session: aiohttp.ClientSession, username: str) -> List[ResolvedPage]:
        first = await self._fetch_fresh(session, username, 1)
        pages = [self._to_resolved(first)]

        if first.is_last_page:
            return pages

        if first.last_page is not None:
            fetched = await self._fetch_range(session, username, 2, first.last_page)
            pages.extend(self._to_resolved(page) for page in fetched)
            return pages

        pages.extend(self._to_resolved(page) for page in await self._follow_next(session, username, first))
        return pages

    async def _revalidate(
        self,
        session: aiohttp.ClientSession,
        key: str,
        username: str,
        cached_entries: List[PageEntry],
    ) -> Tuple[List[ResolvedPage], bool]:
        outcomes = await gather_or_cancel(*(
            self.github_client.fetch_page(session, username, entry.page_number, entry.etag)
            for entry in cached_entries
        ))

        previous_count = len(cached_entries)
        # Page 1 carries the authoritative page count. Without it, use the largest
        # count any refetched page advertises, then the cached count.
        last_page = outcomes[0].last_page
        if last_page is None:
            last_page = max(
                (outcome.last_page for outcome in outcomes
                 if isinstance(outcome, PageFresh) and outcome.last_page is not None),
                default=previous_count,
            )

        pages: List[ResolvedPage] = []
        entirely_fresh = True
        # Highest kept page when it was refetched; its rel="next" may point past the known count.
        tail: Optional[PageFresh] = None

        for entry, outcome in zip(cached_entries, outcomes):
            if entry.page_number > last_page:
                break
            tail = None

            if isinstance(outcome, PageNotModified):
                repos = await self.cache_store.get_page_data(key, entry.etag)
                if repos is not None:
                    pages.append(ResolvedPage(entry.page_number, entry.etag, repos))
                    continue
                logger.warning(
                    f"Page {entry.page_number} of '{key}' is not modified but its data is missing. Refetching."
                )
                outcome = await self._fetch_fresh(session, username, entry.page_number)

            entirely_fresh = False
            tail = outcome
            pages.append(self._to_resolved(outcome))

        if last_page < previous_count:
            logger.info(f"'{key}' shrank from {previous_count} to {last_page} pages.")
            entirely_fresh = False
        elif last_page > previous_count:
            logger.info(f"'{key}' grew from {previous_count} to {last_page} pages.")
            grown = await self._fetch_range(session, username, previous_count + 1, last_page)
            pages.extend(self._to_resolved(page) for page in grown)
            tail = grown[-1]
            entirely_fresh = False

        if tail is not None and not tail.is_last_page:
            logger.info(f"Page {tail.page_number} of '{key}' links to a next page. Following it.")
            pages.extend(self._to_resolved(page) for page in await self._follow_next(session, username, tail))
            entirely_fresh = False

        return pages, entirely_fresh

    async def _fetch_range(
        self,
        session: aiohttp.ClientSession,
        username: str,
        first_page: int,
        last_page: int,
    ) -> List[PageFresh]:
        return await gather_or_cancel(*(
            self._fetch_fresh(session, username, page_number)
            for page_number in range(first_page, last_page + 1)
        ))

    async def _follow_next(self, session: aiohttp.ClientSession, username: str, page: PageFresh) -> List[PageFresh]:
        """Walks rel="next" one page at a time when no last page is advertised."""
        fetched: List[PageFresh] = []
        while not page.is_last_page:
            page = await self._fetch_fresh(session, username, page.page_number + 1)
            fetched.append(page)
        return fetched

    async def _fetch_fresh(self, session: aiohttp.ClientSession, username: str, page_number: int) -> PageFresh:
        outcome = await self.github_client.fetch_page(session, username, page_number)
        if not isinstance(outcome, PageFresh):
            raise TypeError(f"Unconditional fetch of page {page_number} returned {type(outcome).__name__}.")
        return outcome

    @staticmethod
    def _to_resolved(page: PageFresh) -> ResolvedPage:
        return ResolvedPage(page.page_number, page.etag, list(page.repos))
