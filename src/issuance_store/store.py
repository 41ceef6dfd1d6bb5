from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from sqlalchemy import Column, LargeBinary, MetaData, Table, Text, cast, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

from issuance_store import codec
from issuance_store.config import MERGE_STRATEGIES, Settings
from issuance_store.errors import ConfigError, StoreError

logger = logging.getLogger(__name__)

MergeFn = Callable[[str, int], Awaitable[bool]]

metadata = MetaData()


class empty_blob(FunctionElement):
    """Zero-length binary literal for the timeline column server default."""

    type = LargeBinary()
    inherit_cache = True


@compiles(empty_blob)
def _empty_blob(element, compiler, **kw):
    return "''"


@compiles(empty_blob, "sqlite")
def _empty_blob_sqlite(element, compiler, **kw):
    return "X''"


issuance_table = Table(
    "issuance",
    metadata,
    Column("name", Text, primary_key=True),
    Column("issuances", LargeBinary, nullable=False, default=b"", server_default=empty_blob()),
)


@dataclass(frozen=True)
class TimelineRecord:
    """One entity's packed timeline as stored."""

    name: str
    timeline: bytes = b""

    def offsets(self) -> list[int]:
        return codec.decode(self.timeline)


class TimelineStore(Protocol):
    async def get(self, name: str) -> TimelineRecord | None: ...

    async def merge_transactional(self, name: str, offset: int) -> bool: ...

    async def merge_atomic_append(self, name: str, offset: int) -> bool: ...

    def scan_all(self) -> AsyncIterator[TimelineRecord]: ...


def merge_function(store: TimelineStore, strategy: str) -> MergeFn:
    """Select exactly one merge strategy for a whole ingestion run."""
    if strategy == "transactional":
        return store.merge_transactional
    if strategy == "atomic":
        return store.merge_atomic_append
    raise ConfigError(f"Unsupported merge strategy: {strategy!r} (expected one of {MERGE_STRATEGIES})")


class SqlTimelineStore:
    """Timeline store backed by a SQL table through an async SQLAlchemy engine.

    PostgreSQL (asyncpg) is the production backend; SQLite (aiosqlite) is
    supported for local runs and tests. Row locks are only real on PostgreSQL.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        capacity_bytes: int = codec.DEFAULT_CAPACITY_BYTES,
        scan_batch_size: int = 1000,
    ) -> None:
        self.engine = engine
        self.capacity_bytes = capacity_bytes
        self.scan_batch_size = scan_batch_size
        self._dialect = engine.dialect.name

    @classmethod
    def from_settings(cls, settings: Settings, **engine_kwargs: Any) -> SqlTimelineStore:
        if settings.dsn.startswith("sqlite"):
            engine = create_async_engine(settings.dsn, **engine_kwargs)
        else:
            engine = create_async_engine(
                settings.dsn,
                pool_size=settings.pool_size,
                max_overflow=0,
                pool_pre_ping=True,
                **engine_kwargs,
            )
        logger.info(
            "Initialized timeline store: %s (pool_size=%d)",
            settings.dsn.split("@")[-1],
            settings.pool_size,
        )
        return cls(engine, capacity_bytes=settings.capacity_bytes)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _translate_errors(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            raise StoreError(f"{action} failed: {exc}") from exc

    def _insert(self):
        if self._dialect == "postgresql":
            return postgresql.insert(issuance_table)
        if self._dialect == "sqlite":
            return sqlite.insert(issuance_table)
        raise StoreError(f"Unsupported SQL dialect for upserts: {self._dialect!r}")

    def _concat(self, left, right):
        joined = left.op("||")(right)
        if self._dialect == "sqlite":
            # SQLite's || yields TEXT even for BLOB operands.
            return cast(joined, LargeBinary)
        return joined

    async def create_schema(self) -> None:
        async with self._translate_errors("create schema"):
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)

    async def get(self, name: str) -> TimelineRecord | None:
        """Return the stored timeline for name, or None when it has never been seen."""
        query = select(issuance_table.c.name, issuance_table.c.issuances).where(
            issuance_table.c.name == name
        )
        async with self._translate_errors(f"get {name!r}"):
            async with self.engine.connect() as conn:
                row = (await conn.execute(query)).first()
        if row is None:
            return None
        return TimelineRecord(name=row.name, timeline=bytes(row.issuances))

    async def _locked_timeline(self, conn: AsyncConnection, name: str) -> bytes:
        placeholder = self._insert().values(name=name, issuances=b"")
        await conn.execute(placeholder.on_conflict_do_nothing(index_elements=[issuance_table.c.name]))
        query = (
            select(issuance_table.c.issuances)
            .where(issuance_table.c.name == name)
            .with_for_update()
        )
        return bytes((await conn.execute(query)).scalar_one())

    async def merge_transactional(self, name: str, offset: int) -> bool:
        """
        Append offset to name's timeline inside one row-locked transaction.

        Returns False, writing nothing, when the offset is already present or
        the timeline is full. The placeholder insert makes sure there is a row
        to lock even for a brand new name.
        """
        addition = codec.encode_one(offset)
        async with self._translate_errors(f"transactional merge for {name!r}"):
            async with self.engine.connect() as conn:
                async with conn.begin() as tx:
                    current = await self._locked_timeline(conn, name)
                    if codec.contains(current, offset) or len(current) >= self.capacity_bytes:
                        await tx.rollback()
                        return False
                    await conn.execute(
                        update(issuance_table)
                        .where(issuance_table.c.name == name)
                        .values(issuances=current + addition)
                    )
        return True

    def _atomic_append_statement(self, name: str, offset: int):
        stmt = self._insert().values(name=name, issuances=codec.encode_one(offset))
        return stmt.on_conflict_do_update(
            index_elements=[issuance_table.c.name],
            set_={"issuances": self._concat(issuance_table.c.issuances, stmt.excluded.issuances)},
            where=func.length(issuance_table.c.issuances) < self.capacity_bytes,
        )

    async def merge_atomic_append(self, name: str, offset: int) -> bool:
        """
        Insert-or-append offset with a single conditional upsert.

        Does not deduplicate: racing calls with the same offset can both land.
        """
        stmt = self._atomic_append_statement(name, offset)
        async with self._translate_errors(f"atomic append for {name!r}"):
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                applied = result.rowcount != 0
        return applied

    async def scan_all(self) -> AsyncIterator[TimelineRecord]:
        """Stream every stored timeline without materialising the table."""
        query = select(issuance_table.c.name, issuance_table.c.issuances).execution_options(
            yield_per=self.scan_batch_size
        )
        async with self._translate_errors("scan"):
            async with self.engine.connect() as conn:
                result = await conn.stream(query)
                async for row in result:
                    yield TimelineRecord(name=row.name, timeline=bytes(row.issuances))
