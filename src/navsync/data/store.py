"""Typed SQLite read/write abstraction for watchlists and NAV snapshots.

Watchlists are stored as one JSON document per row, keyed by id with a unique
slug. Every write is followed by a change notification to registered
listeners, which is how the host learns that prices moved.

CRITICAL: Decimal values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import inspect
import json
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal

from navsync.data.database import WatchlistDatabase
from navsync.data.normalize import watchlist_from_document, watchlist_to_document
from navsync.exceptions import WatchlistNotFoundError
from navsync.logging import get_logger
from navsync.models import NavSnapshot, Timeframe, Watchlist

logger = get_logger(__name__)

ChangeListener = Callable[[Watchlist], Awaitable[None] | None]
Mutator = Callable[[Watchlist], Watchlist | None]


class WatchlistStore:
    """Async SQLite store for watchlist documents and NAV snapshots.

    ``update_watchlist`` serializes read-modify-write per watchlist id, so
    concurrent batches touching the same watchlist cannot overwrite each
    other's merges.

    Usage:
        async with WatchlistDatabase("data/watchlists.db") as database:
            store = WatchlistStore(database)
            await store.save_watchlist(watchlist)
    """

    def __init__(
        self,
        database: WatchlistDatabase,
        max_snapshots_per_watchlist: int = 100,
    ) -> None:
        self._database = database
        self._max_snapshots = max_snapshots_per_watchlist
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[ChangeListener] = []

    # ──────────────────────────────────────────────
    # Change notifications
    # ──────────────────────────────────────────────

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify_change(self, watchlist: Watchlist) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(watchlist)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error("change_listener_failed", slug=watchlist.slug, exc_info=True)

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def save_watchlist(self, watchlist: Watchlist) -> None:
        """Insert or replace a watchlist document, then broadcast the change."""
        document = json.dumps(watchlist_to_document(watchlist))
        now_ms = int(time.time() * 1000)
        async with self._database.transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO watchlists (id, slug, name, document, updated_at_ms) "
                "VALUES (?, ?, ?, ?, ?)",
                (watchlist.id, watchlist.slug, watchlist.name, document, now_ms),
            )
        logger.debug(
            "watchlist_saved",
            watchlist_id=watchlist.id,
            slug=watchlist.slug,
            items=len(watchlist.items),
        )
        await self._notify_change(watchlist)

    async def update_watchlist(self, watchlist_id: str, mutator: Mutator) -> Watchlist:
        """Read, mutate and write one watchlist under its per-id lock.

        The mutator may modify the watchlist in place (returning None) or
        return a replacement.

        Raises:
            WatchlistNotFoundError: If the id is unknown.
        """
        lock = self._locks.setdefault(watchlist_id, asyncio.Lock())
        async with lock:
            watchlist = await self.get_watchlist(watchlist_id)
            if watchlist is None:
                raise WatchlistNotFoundError(watchlist_id)
            result = mutator(watchlist)
            updated = result if result is not None else watchlist
            await self.save_watchlist(updated)
            return updated

    async def delete_watchlist(self, watchlist_id: str) -> bool:
        """Delete a watchlist and its snapshots. Returns False if it did not exist."""
        watchlist = await self.get_watchlist(watchlist_id)
        if watchlist is None:
            return False
        async with self._database.transaction() as db:
            await db.execute("DELETE FROM watchlists WHERE id = ?", (watchlist_id,))
            await db.execute("DELETE FROM nav_snapshots WHERE slug = ?", (watchlist.slug,))
        self._locks.pop(watchlist_id, None)
        logger.info("watchlist_deleted", watchlist_id=watchlist_id, slug=watchlist.slug)
        return True

    async def save_nav_snapshot(self, snapshot: NavSnapshot) -> None:
        """Persist a snapshot, keeping only the newest N per watchlist."""
        async with self._database.transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO nav_snapshots "
                "(slug, timestamp_ms, average_return, ticker_count, valid_tickers, timeframe) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    snapshot.slug,
                    snapshot.timestamp_ms,
                    str(snapshot.average_return),
                    snapshot.ticker_count,
                    snapshot.valid_tickers,
                    snapshot.timeframe.value,
                ),
            )
            await db.execute(
                "DELETE FROM nav_snapshots WHERE slug = ? AND timestamp_ms NOT IN ("
                "  SELECT timestamp_ms FROM nav_snapshots WHERE slug = ? "
                "  ORDER BY timestamp_ms DESC LIMIT ?"
                ")",
                (snapshot.slug, snapshot.slug, self._max_snapshots),
            )
        logger.debug(
            "nav_snapshot_saved",
            slug=snapshot.slug,
            average_return=str(snapshot.average_return),
            valid_tickers=snapshot.valid_tickers,
        )

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_watchlist(self, watchlist_id: str) -> Watchlist | None:
        cursor = await self._database.db.execute(
            "SELECT document FROM watchlists WHERE id = ?", (watchlist_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return watchlist_from_document(json.loads(row[0]))

    async def get_watchlist_by_slug(self, slug: str) -> Watchlist | None:
        cursor = await self._database.db.execute(
            "SELECT document FROM watchlists WHERE slug = ?", (slug,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return watchlist_from_document(json.loads(row[0]))

    async def list_watchlists(self) -> list[Watchlist]:
        """All watchlists ordered by slug."""
        cursor = await self._database.db.execute(
            "SELECT document FROM watchlists ORDER BY slug ASC"
        )
        rows = await cursor.fetchall()
        return [watchlist_from_document(json.loads(row[0])) for row in rows]

    async def get_nav_snapshots(self, slug: str, limit: int | None = None) -> list[NavSnapshot]:
        """Snapshots for a watchlist ordered by timestamp ascending.

        With ``limit``, only the newest ``limit`` snapshots are returned.
        """
        query = (
            "SELECT slug, timestamp_ms, average_return, ticker_count, valid_tickers, timeframe "
            "FROM nav_snapshots WHERE slug = ? ORDER BY timestamp_ms DESC"
        )
        params: list = [slug]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        snapshots = [
            NavSnapshot(
                slug=row[0],
                timestamp_ms=row[1],
                average_return=Decimal(row[2]),
                ticker_count=row[3],
                valid_tickers=row[4],
                timeframe=Timeframe(row[5]),
            )
            for row in rows
        ]
        snapshots.reverse()
        return snapshots
