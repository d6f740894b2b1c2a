"""aiosqlite connection owner for the watchlist store.

The schema is applied as numbered migrations recorded in ``schema_version``,
so an existing database file is brought forward on connect instead of being
recreated. Watchlists are stored as JSON documents keyed by id (slug is
unique); NAV snapshots are rows keyed by (slug, timestamp_ms) with Decimal
values kept as TEXT.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from navsync.logging import get_logger

logger = get_logger(__name__)

#: Ordered schema migrations. A version is recorded once its script has run.
MIGRATIONS: dict[int, str] = {
    1: """
    CREATE TABLE IF NOT EXISTS watchlists (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        document TEXT NOT NULL,
        updated_at_ms INTEGER NOT NULL
    );
    """,
    2: """
    CREATE TABLE IF NOT EXISTS nav_snapshots (
        slug TEXT NOT NULL,
        timestamp_ms INTEGER NOT NULL,
        average_return TEXT NOT NULL,
        ticker_count INTEGER NOT NULL,
        valid_tickers INTEGER NOT NULL,
        timeframe TEXT NOT NULL DEFAULT 'MAX',
        PRIMARY KEY (slug, timestamp_ms)
    );
    CREATE INDEX IF NOT EXISTS idx_nav_snapshots_slug_ts
        ON nav_snapshots(slug, timestamp_ms DESC);
    """,
}

SCHEMA_VERSION = max(MIGRATIONS)


class WatchlistDatabase:
    """Owns the single aiosqlite connection shared by the store.

    Multi-statement writes go through :meth:`transaction`, which serializes
    writers on this connection and rolls back on error.

    Usage:
        async with WatchlistDatabase("data/watchlists.db") as database:
            async with database.transaction() as db:
                await db.execute("DELETE FROM ...")
    """

    def __init__(self, db_path: str = "data/watchlists.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """The open connection; raises RuntimeError before connect()."""
        if self._connection is None:
            raise RuntimeError("Watchlist database not connected. Call connect() first.")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        if self._connection is not None:
            return
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        applied = await self._migrate()
        logger.info(
            "watchlist_db_connected",
            db_path=self._db_path,
            schema_version=SCHEMA_VERSION,
            migrations_applied=applied,
        )

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("watchlist_db_closed", db_path=self._db_path)

    async def get_schema_version(self) -> int:
        cursor = await self.db.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def _migrate(self) -> list[int]:
        """Apply every migration newer than the recorded version."""
        db = self.db
        await db.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
        await db.commit()

        current = await self.get_schema_version()
        applied: list[int] = []
        for version in sorted(v for v in MIGRATIONS if v > current):
            async with self.transaction() as tx:
                await tx.executescript(MIGRATIONS[version])
                await tx.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            applied.append(version)
            logger.info("schema_migration_applied", version=version)
        return applied

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a group of writes; commit on success, roll back on error."""
        async with self._write_lock:
            db = self.db
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
