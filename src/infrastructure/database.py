import logging
from typing import Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy import Table, Column, String, Integer, DateTime, MetaData, JSON, delete, select, text

from src.domain.exceptions import DatabaseException
from src.domain.interfaces import CacheStore
from src.domain.models import AggregateResult, PageEntry, RepoRecord

logger = logging.getLogger(__name__)

JSON_PAYLOAD = JSON().with_variant(JSONB(), 'postgresql')

# SQLAlchemy core Table definitions, all scoped by the opaque cache key
metadata = MetaData()
page_entries_table = Table(
    'stats_page_entries', metadata,
    Column('cache_key', String, primary_key=True),
    Column('page_number', Integer, primary_key=True),
    Column('etag', String, nullable=False),
)
page_data_table = Table(
    'stats_page_data', metadata,
    Column('cache_key', String, primary_key=True),
    Column('etag', String, primary_key=True),
    Column('repos', JSON_PAYLOAD, nullable=False),
)
aggregates_table = Table(
    'stats_aggregates', metadata,
    Column('cache_key', String, primary_key=True),
    Column('result', JSON_PAYLOAD, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=text('NOW()')),
)

class PostgresCacheStore(CacheStore):
    """
    Cache store backed by PostgreSQL.
    Keeps, per cache key, the ordered page list, the page data by ETag and the aggregated result.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def get_page_list(self, key: str) -> List[PageEntry]:
        stmt = (
            select(page_entries_table.c.page_number, page_entries_table.c.etag)
            .where(page_entries_table.c.cache_key == key)
            .order_by(page_entries_table.c.page_number)
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                return [PageEntry(page_number=row.page_number, etag=row.etag) for row in result]
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to read page list for '{key}': {e}") from e

    async def get_page_data(self, key: str, etag: str) -> Optional[List[RepoRecord]]:
        stmt = select(page_data_table.c.repos).where(
            page_data_table.c.cache_key == key,
            page_data_table.c.etag == etag,
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                repos = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to read page data for '{key}': {e}") from e

        if repos is None:
            return None
        return [RepoRecord.model_validate(repo) for repo in repos]

    async def get_aggregate(self, key: str) -> Optional[AggregateResult]:
        stmt = select(aggregates_table.c.result).where(aggregates_table.c.cache_key == key)
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                payload = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to read aggregate for '{key}': {e}") from e

        if payload is None:
            return None
        return AggregateResult.model_validate(payload)

    async def commit(
        self,
        key: str,
        page_list: List[PageEntry],
        page_data: Dict[str, List[RepoRecord]],
        aggregate: AggregateResult,
    ) -> None:
        """
        Replaces everything cached for ``key`` inside a single transaction.

        Args:
            key (str): The cache key.
            page_list (List[PageEntry]): The new ordered page list.
            page_data (Dict[str, List[RepoRecord]]): Page data by ETag; entries not referenced by page_list are skipped.
            aggregate (AggregateResult): The freshly computed result.
        """
        referenced = {entry.etag for entry in page_list}

        entry_values = [
            {'cache_key': key, 'page_number': entry.page_number, 'etag': entry.etag}
            for entry in page_list
        ]
        data_values = [
            {'cache_key': key, 'etag': etag, 'repos': [repo.model_dump() for repo in repos]}
            for etag, repos in page_data.items() if etag in referenced
        ]
        aggregate_payload = aggregate.model_dump(by_alias=True)

        try:
            async with self.engine.begin() as conn:
                # Overwrite, never merge: stale ETags of this key become unreachable and are dropped.
                await conn.execute(delete(page_entries_table).where(page_entries_table.c.cache_key == key))
                await conn.execute(delete(page_data_table).where(page_data_table.c.cache_key == key))

                if entry_values:
                    await conn.execute(insert(page_entries_table).values(entry_values))
                if data_values:
                    await conn.execute(insert(page_data_table).values(data_values))

                stmt = insert(aggregates_table).values(cache_key=key, result=aggregate_payload)
                upsert_stmt = stmt.on_conflict_do_update(
                    index_elements=['cache_key'],
                    set_={
                        'result': stmt.excluded.result,
                        'updated_at': text('NOW()'),
                    },
                )
                await conn.execute(upsert_stmt)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to commit cache state for '{key}': {e}") from e

        logger.info(f"Committed {len(entry_values)} pages for '{key}'.")
