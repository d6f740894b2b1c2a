"""Manual updates -- user-triggered refreshes on the reserved manual budget.

Manual fetches bypass the session gate and the cycle machinery entirely:
they run immediately, draw from the manual rate-limit pool, and publish
with ``source=manual``. Watchlists outside the active set are refreshed
through the registry's manual-update queue, which a background loop drains.
"""

import asyncio
import time
from collections.abc import Callable

from navsync.config import ManualUpdateSettings, SchedulerSettings
from navsync.data.normalize import apply_price_update
from navsync.data.store import WatchlistStore
from navsync.exceptions import WatchlistNotFoundError
from navsync.logging import get_logger
from navsync.market_hours import MS_PER_HOUR
from navsync.models import (
    HistoricalSeries,
    NAVDataPoint,
    NavUpdate,
    Timeframe,
    UpdateSource,
    Watchlist,
)
from navsync.nav.calculator import calculate_nav_performance
from navsync.notifications import NotificationCenter
from navsync.provider.client import QuoteProvider
from navsync.sync.active_set import ActiveSetRegistry
from navsync.sync.event_bus import NavEventBus
from navsync.sync.rate_limiter import RateLimiter
from navsync.sync.realtime import RealtimeNavCalculator

logger = get_logger(__name__)


class ManualUpdateService:
    """Immediate fetches on the manual pool plus the manual queue worker."""

    def __init__(
        self,
        provider: QuoteProvider,
        store: WatchlistStore,
        registry: ActiveSetRegistry,
        rate_limiter: RateLimiter,
        event_bus: NavEventBus,
        notifications: NotificationCenter,
        settings: ManualUpdateSettings | None = None,
        history_settings: SchedulerSettings | None = None,
        time_fn: Callable[[], float] = time.time,
        realtime: RealtimeNavCalculator | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._event_bus = event_bus
        self._notifications = notifications
        self._realtime = realtime
        self._settings = settings or ManualUpdateSettings()
        self._history = history_settings or SchedulerSettings()
        self._time_fn = time_fn
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Requests
    # ──────────────────────────────────────────────

    def request_update(self, slug: str) -> bool:
        """Queue a refresh for an inactive watchlist. False if refused."""
        queued = self._registry.request_manual_update(slug)
        if queued:
            self._notifications.handle_manual_update_status(slug, "queued")
        return queued

    def _take_manual_slot(self, symbol: str) -> bool:
        if not self._rate_limiter.can_make_manual_request():
            logger.warning("manual_pool_exhausted", symbol=symbol)
            self._notifications.handle_rate_limit_warning(self._rate_limiter.get_status())
            return False
        self._rate_limiter.record_manual_request()
        return True

    async def fetch_symbols(self, symbols: list[str]) -> dict[str, HistoricalSeries]:
        """Fetch short-horizon history now, one manual credit per symbol.

        Symbols without a free slot or without data are left out of the result.
        """
        now_ms = int(self._time_fn() * 1000)
        start_ms = now_ms - self._history.history_lookback_hours * MS_PER_HOUR

        results: dict[str, HistoricalSeries] = {}
        for symbol in symbols:
            if not self._take_manual_slot(symbol):
                continue
            try:
                series = await self._provider.fetch_historical_data(
                    symbol,
                    start_ms,
                    now_ms,
                    interval=self._history.history_interval,
                    output_size=self._history.history_output_size,
                )
            except Exception as e:
                logger.warning("manual_fetch_failed", symbol=symbol, error=str(e))
                continue
            if series is None or not series.historical_data:
                logger.debug("manual_fetch_empty", symbol=symbol)
                continue
            results[symbol] = series
        return results

    async def update_watchlist(self, slug: str) -> list[NAVDataPoint]:
        """Fetch, merge and publish one watchlist immediately.

        Raises:
            WatchlistNotFoundError: If no watchlist has this slug.
        """
        watchlist = await self._store.get_watchlist_by_slug(slug)
        if watchlist is None:
            raise WatchlistNotFoundError(slug)

        results = await self.fetch_symbols(watchlist.symbols)
        max_points = self._history.max_history_points

        def merge(current: Watchlist) -> None:
            current.items = [
                apply_price_update(item, results[item.symbol], max_points)
                if item.symbol in results
                else item
                for item in current.items
            ]

        if results:
            watchlist = await self._store.update_watchlist(watchlist.id, merge)

        series = calculate_nav_performance(
            watchlist.items, Timeframe.MAX, int(self._time_fn() * 1000)
        )
        await self._event_bus.emit(slug, NavUpdate(series=series), UpdateSource.MANUAL)
        logger.info(
            "manual_update_applied",
            slug=slug,
            fetched=len(results),
            symbols=len(watchlist.items),
        )
        return series

    async def refresh_quotes(self, slug: str) -> int:
        """Refresh current prices from one batch quote call.

        Returns:
            Number of instruments whose current price changed.
        """
        watchlist = await self._store.get_watchlist_by_slug(slug)
        if watchlist is None:
            raise WatchlistNotFoundError(slug)

        symbols = [symbol for symbol in watchlist.symbols if self._take_manual_slot(symbol)]
        if not symbols:
            return 0

        quotes = await self._provider.fetch_batch_quotes(symbols, Timeframe.DAILY)
        prices = {quote.symbol: quote.price for quote in quotes if quote.price > 0}
        if not prices:
            return 0

        def set_prices(current: Watchlist) -> None:
            for item in current.items:
                if item.symbol in prices:
                    item.current_price = prices[item.symbol]

        updated = await self._store.update_watchlist(watchlist.id, set_prices)
        logger.info("quotes_refreshed", slug=slug, updated=len(prices))
        if self._realtime is not None:
            await self._realtime.trigger_immediate_calculation(slug, updated.items)
        return len(prices)

    async def process_next(self) -> bool:
        """Process the oldest pending queue entry.

        Returns:
            False if nothing was pending.
        """
        request = self._registry.get_next_manual_update()
        if request is None:
            return False

        slug = request.slug
        self._registry.mark_manual_update_processing(slug)
        self._notifications.handle_manual_update_status(slug, "processing")
        try:
            await self.update_watchlist(slug)
            self._notifications.handle_manual_update_status(slug, "completed")
        except WatchlistNotFoundError:
            logger.warning("manual_update_unknown_watchlist", slug=slug)
            self._notifications.handle_manual_update_status(slug, "failed")
        except Exception as e:
            logger.error("manual_update_failed", slug=slug, exc_info=True)
            self._notifications.handle_system_error(e, {"slug": slug, "component": "manual"})
        finally:
            self._registry.mark_manual_update_completed(slug)
        return True

    # ──────────────────────────────────────────────
    # Queue worker
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        if not self._settings.enabled:
            logger.info("manual_update_worker_disabled")
            return
        if self._running:
            logger.warning("manual_update_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("manual_update_worker_started", poll_interval=self._settings.poll_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("manual_update_worker_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.drain_queue()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("manual_update_worker_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.poll_interval_seconds)

    async def drain_queue(self) -> int:
        """Expire old requests, then process every pending one. Returns how many ran."""
        self._registry.cleanup_old_manual_updates()
        processed = 0
        while await self.process_next():
            processed += 1
        return processed
