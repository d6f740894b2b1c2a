"""Bounded registry of watchlists currently open in the host application.

The union of their symbols is the scheduler's fetch universe. At most
``max_active`` watchlists are tracked; opening one more evicts the entry
opened longest ago. Watchlists outside the set can be refreshed through a
small manual-update queue.
"""

import time
from collections.abc import Callable, Iterable

from navsync.config import RegistrySettings
from navsync.logging import get_logger
from navsync.models import ActiveSetEntry, ManualUpdateRequest, ManualUpdateStatus

logger = get_logger(__name__)

#: Priority of a watchlist opened this very second; decays by one per second.
BASE_PRIORITY = 1000


class ActiveSetRegistry:
    """Tracks open watchlists (LRU by open time) and queued manual updates."""

    def __init__(
        self,
        settings: RegistrySettings | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or RegistrySettings()
        self._time_fn = time_fn
        self._active: dict[str, ActiveSetEntry] = {}
        self._manual_queue: dict[str, ManualUpdateRequest] = {}

    @property
    def max_active(self) -> int:
        return self._settings.max_active

    # ──────────────────────────────────────────────
    # Active set
    # ──────────────────────────────────────────────

    def register_active(self, slug: str, tickers: Iterable[str]) -> None:
        """Mark a watchlist as open, evicting the least recently opened if full."""
        now = self._time_fn()
        ticker_set = set(tickers)

        entry = self._active.get(slug)
        if entry is not None:
            entry.last_opened_at = now
            entry.priority = self.calculate_priority(now)
            entry.tickers = ticker_set
            logger.debug("active_watchlist_refreshed", slug=slug, tickers=len(ticker_set))
            return

        if len(self._active) >= self.max_active:
            # min() keeps the first-inserted entry on ties
            oldest = min(self._active.values(), key=lambda e: e.last_opened_at)
            del self._active[oldest.slug]
            logger.info("active_watchlist_evicted", slug=oldest.slug, replaced_by=slug)

        self._active[slug] = ActiveSetEntry(
            slug=slug,
            last_opened_at=now,
            priority=self.calculate_priority(now),
            tickers=ticker_set,
        )
        logger.info(
            "active_watchlist_registered",
            slug=slug,
            tickers=len(ticker_set),
            active_count=len(self._active),
        )

    def unregister(self, slug: str) -> None:
        if self._active.pop(slug, None) is not None:
            logger.info("active_watchlist_unregistered", slug=slug)

    def is_active(self, slug: str) -> bool:
        return slug in self._active

    def get_active_entries(self) -> list[ActiveSetEntry]:
        """Active entries in insertion order."""
        return list(self._active.values())

    def get_active_slugs(self) -> list[str]:
        return list(self._active)

    def get_all_unique_tickers(self) -> list[str]:
        """Union of all active symbols in first-seen order."""
        seen: dict[str, None] = {}
        for entry in self._active.values():
            for symbol in sorted(entry.tickers):
                seen.setdefault(symbol, None)
        return list(seen)

    def get_burnlists_for_ticker(self, symbol: str) -> list[str]:
        """Slugs of active watchlists that hold the symbol."""
        return [slug for slug, entry in self._active.items() if symbol in entry.tickers]

    def calculate_priority(self, last_opened_at: float) -> int:
        elapsed = int(self._time_fn() - last_opened_at)
        return max(0, BASE_PRIORITY - elapsed)

    def get_priority(self, slug: str) -> int:
        """Current recency priority of an active watchlist, 0 if not active."""
        entry = self._active.get(slug)
        if entry is None:
            return 0
        return self.calculate_priority(entry.last_opened_at)

    # ──────────────────────────────────────────────
    # Manual update queue
    # ──────────────────────────────────────────────

    def request_manual_update(self, slug: str) -> bool:
        """Queue a refresh for an inactive watchlist.

        Returns:
            False if the watchlist is active (the scheduler covers it) or
            already queued.
        """
        if slug in self._active:
            logger.debug("manual_update_refused_active", slug=slug)
            return False
        if slug in self._manual_queue:
            logger.debug("manual_update_refused_queued", slug=slug)
            return False

        self._manual_queue[slug] = ManualUpdateRequest(slug=slug, requested_at=self._time_fn())
        logger.info("manual_update_queued", slug=slug, queue_size=len(self._manual_queue))
        return True

    def get_next_manual_update(self) -> ManualUpdateRequest | None:
        """Oldest pending request, or None."""
        for request in self._manual_queue.values():
            if request.status == ManualUpdateStatus.PENDING:
                return request
        return None

    def mark_manual_update_processing(self, slug: str) -> None:
        request = self._manual_queue.get(slug)
        if request is not None:
            request.status = ManualUpdateStatus.PROCESSING

    def mark_manual_update_completed(self, slug: str) -> None:
        if self._manual_queue.pop(slug, None) is not None:
            logger.debug("manual_update_completed", slug=slug)

    def is_manual_update_pending(self, slug: str) -> bool:
        return slug in self._manual_queue

    def get_manual_update_queue(self) -> list[ManualUpdateRequest]:
        return list(self._manual_queue.values())

    def cleanup_old_manual_updates(self) -> int:
        """Drop queued requests older than the TTL. Returns how many were dropped."""
        cutoff = self._time_fn() - self._settings.manual_update_ttl_seconds
        expired = [
            slug for slug, request in self._manual_queue.items()
            if request.requested_at < cutoff
        ]
        for slug in expired:
            del self._manual_queue[slug]
        if expired:
            logger.info("manual_updates_expired", slugs=expired)
        return len(expired)

    def get_system_status(self) -> dict:
        """Aggregate registry state for status displays."""
        return {
            "active_count": len(self._active),
            "max_active": self.max_active,
            "active_watchlists": [
                {
                    "slug": entry.slug,
                    "tickers": len(entry.tickers),
                    "priority": self.calculate_priority(entry.last_opened_at),
                    "last_opened_at": entry.last_opened_at,
                }
                for entry in self._active.values()
            ],
            "unique_tickers": len(self.get_all_unique_tickers()),
            "manual_queue_size": len(self._manual_queue),
        }
