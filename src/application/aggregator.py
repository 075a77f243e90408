import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp
from pydantic import BaseModel, Field

from src.application.concurrency import gather_or_cancel
from src.domain.exceptions import StatsException
from src.domain.formatting import format_average_size
from src.domain.interfaces import PageSource
from src.domain.models import AggregateResult, ForkFilter, LanguageStat, RepoRecord

logger = logging.getLogger(__name__)

# Number of per-repository language lookups in flight at once
MAX_CONCURRENT_LANGUAGE_FETCHES = 10


class StatsTotals(BaseModel):
    """
    Running totals of one aggregation pass.
    ``languages`` keeps first-seen order, which decides ties when sorting.
    """

    repo_count: int = 0
    star_total: int = 0
    fork_total: int = 0
    size_total_kb: int = 0
    languages: Dict[str, int] = Field(default_factory=dict)
    missing_languages: List[str] = Field(default_factory=list)

    @classmethod
    def fold(cls, records: Iterable[Tuple[RepoRecord, Optional[Dict[str, int]]]]) -> "StatsTotals":
        """Folds (record, language breakdown) pairs; a None breakdown means the lookup failed."""
        totals = cls()
        for record, languages in records:
            totals.repo_count += 1
            totals.star_total += record.stars
            totals.fork_total += record.forks
            totals.size_total_kb += record.size_kb

            if languages is None:
                totals.missing_languages.append(record.name)
                continue
            for name, byte_count in languages.items():
                totals.languages[name] = totals.languages.get(name, 0) + byte_count
        return totals

    def merge(self, other: "StatsTotals") -> "StatsTotals":
        languages = dict(self.languages)
        for name, byte_count in other.languages.items():
            languages[name] = languages.get(name, 0) + byte_count

        return StatsTotals(
            repo_count=self.repo_count + other.repo_count,
            star_total=self.star_total + other.star_total,
            fork_total=self.fork_total + other.fork_total,
            size_total_kb=self.size_total_kb + other.size_total_kb,
            languages=languages,
            missing_languages=self.missing_languages + other.missing_languages,
        )

    def to_result(self) -> AggregateResult:
        # sorted() is stable, so equal byte counts keep first-seen order even with reverse=True.
        ranked = sorted(self.languages.items(), key=lambda item: item[1], reverse=True)
        return AggregateResult(
            repo_count=self.repo_count,
            star_total=self.star_total,
            fork_total=self.fork_total,
            avg_repo_size=format_average_size(self.size_total_kb, self.repo_count),
            languages=[LanguageStat(name=name, byte_count=count) for name, count in ranked],
            missing_languages=list(self.missing_languages),
        )


def is_included(record: RepoRecord, fork_filter: ForkFilter) -> bool:
    return not (fork_filter == ForkFilter.EXCLUDE_FORKS and record.is_fork)


class Aggregator:
    """
    Folds the repositories of every page into an AggregateResult,
    resolving each repository's language breakdown through the page source.
    """

    def __init__(self, github_client: PageSource, max_concurrency: int = MAX_CONCURRENT_LANGUAGE_FETCHES):
        self.github_client = github_client
        self.max_concurrency = max_concurrency

    async def aggregate(
        self,
        session: aiohttp.ClientSession,
        pages: Sequence[Sequence[RepoRecord]],
        fork_filter: ForkFilter,
    ) -> AggregateResult:
        totals = await self.collect(session, pages, fork_filter)
        return totals.to_result()

    async def collect(
        self,
        session: aiohttp.ClientSession,
        pages: Sequence[Sequence[RepoRecord]],
        fork_filter: ForkFilter,
    ) -> StatsTotals:
        records = [record for page in pages for record in page if is_included(record, fork_filter)]

        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [self._resolve_languages(session, semaphore, record) for record in records]
        # gather preserves input order, so the fold below runs in page order.
        languages = await gather_or_cancel(*tasks)

        totals = StatsTotals.fold(zip(records, languages))
        if totals.missing_languages:
            logger.warning(
                f"Language breakdown unavailable for {len(totals.missing_languages)} "
                f"of {totals.repo_count} repositories."
            )
        return totals

    async def _resolve_languages(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        record: RepoRecord,
    ) -> Optional[Dict[str, int]]:
        async with semaphore:
            try:
                return await self.github_client.fetch_languages(session, record.languages_url)
            except StatsException as e:
                logger.warning(f"Skipping languages of '{record.name}': {e}")
                return None
