"""Real-time NAV publisher aligned to 5-minute market boundaries.

The scheduler queues a recompute for every watchlist it merged prices into.
Queued watchlists are valued once at the next boundary (:00, :05, ...) and
published with ``source=REALTIME``; several merges between two boundaries
collapse into one event per watchlist. Callers that need an answer now use
``trigger_immediate_calculation`` instead.

Boundaries are computed on Unix time. Exchange offsets are whole hours, so
they coincide with exchange-local 5-minute marks.
"""

import asyncio
import time
from collections.abc import Callable, Sequence

from navsync.config import RealtimeSettings
from navsync.logging import get_logger
from navsync.models import Instrument, NavUpdate, Timeframe, UpdateSource
from navsync.nav.calculator import calculate_nav_at_timestamp
from navsync.sync.event_bus import NavEventBus

logger = get_logger(__name__)


class RealtimeNavCalculator:
    """Coalesces per-watchlist recomputes and publishes them on interval boundaries."""

    def __init__(
        self,
        event_bus: NavEventBus,
        settings: RealtimeSettings | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._event_bus = event_bus
        self._settings = settings or RealtimeSettings()
        self._time_fn = time_fn
        self._pending: dict[str, tuple[list[Instrument], Timeframe]] = {}
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_aligned_at: float | None = None
        self._published = 0

    @property
    def is_running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        if not self._settings.enabled:
            logger.info("realtime_nav_disabled")
            return
        if self._running:
            logger.warning("realtime_nav_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "realtime_nav_started",
            interval=self._settings.interval_seconds,
            next_boundary_in=round(self.get_time_until_next_boundary(), 3),
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._pending.clear()
        logger.info("realtime_nav_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.get_time_until_next_boundary())
            try:
                await self.process_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("realtime_nav_cycle_failed", exc_info=True)

    # ──────────────────────────────────────────────
    # Calculation
    # ──────────────────────────────────────────────

    def queue_aligned_calculation(
        self,
        slug: str,
        items: Sequence[Instrument],
        timeframe: Timeframe | str = Timeframe.MAX,
    ) -> bool:
        """Schedule a recompute at the next boundary. Later calls replace earlier ones."""
        if not self._running:
            logger.debug("realtime_nav_not_running", slug=slug)
            return False
        self._pending[slug] = (list(items), Timeframe(timeframe))
        return True

    async def process_pending(self) -> int:
        """Publish every queued watchlist. Returns how many were published."""
        self._last_aligned_at = self._time_fn()
        pending, self._pending = self._pending, {}
        published = 0
        for slug, (items, timeframe) in pending.items():
            try:
                if await self.calculate_and_emit(slug, items, timeframe):
                    published += 1
            except Exception:
                logger.error("realtime_nav_failed", slug=slug, exc_info=True)
        if pending:
            logger.debug("realtime_nav_aligned", queued=len(pending), published=published)
        return published

    async def calculate_and_emit(
        self,
        slug: str,
        items: Sequence[Instrument],
        timeframe: Timeframe | str = Timeframe.MAX,
    ) -> bool:
        """Value the basket now and publish a single-point update."""
        if not items:
            logger.debug("realtime_nav_empty_basket", slug=slug)
            return False
        now_ms = int(self._time_fn() * 1000)
        point = calculate_nav_at_timestamp(items, now_ms, timeframe, now_ms)
        await self._event_bus.emit(slug, NavUpdate(series=[point]), UpdateSource.REALTIME)
        self._published += 1
        return True

    async def trigger_immediate_calculation(
        self,
        slug: str,
        items: Sequence[Instrument],
        timeframe: Timeframe | str = Timeframe.MAX,
    ) -> bool:
        if not self._running:
            logger.debug("realtime_nav_not_running", slug=slug)
            return False
        self._pending.pop(slug, None)
        return await self.calculate_and_emit(slug, items, timeframe)

    # ──────────────────────────────────────────────
    # Boundaries and status
    # ──────────────────────────────────────────────

    def get_next_boundary(self) -> float:
        """Unix seconds of the next interval boundary, strictly after now."""
        interval = self._settings.interval_seconds
        now = self._time_fn()
        return (now // interval + 1) * interval

    def get_time_until_next_boundary(self) -> float:
        return self.get_next_boundary() - self._time_fn()

    def is_near_boundary(self) -> bool:
        """True within the alignment tolerance on either side of a boundary."""
        interval = self._settings.interval_seconds
        since_last = self._time_fn() % interval
        tolerance = self._settings.alignment_tolerance_seconds
        return since_last <= tolerance or since_last >= interval - tolerance

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "last_aligned_at": self._last_aligned_at,
            "next_boundary": self.get_next_boundary(),
            "seconds_until_next_boundary": self.get_time_until_next_boundary(),
            "near_boundary": self.is_near_boundary(),
            "pending": len(self._pending),
            "published": self._published,
        }
