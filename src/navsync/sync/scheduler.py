"""Batched sync scheduler -- keeps active watchlists fresh within the provider budget.

Every cycle (180s, start to start) the scheduler takes the union of symbols
held by active watchlists, splits it into batches of 5, and dispatches at
most 20 batches spaced 9s apart. Each symbol costs one provider credit, so a
cycle uses at most 100 credits and never more than 55 in a clock minute
(11 batches). Fetched history is merged into the stored watchlists; once all
batches finished (or the last slot plus a 1s buffer elapsed) a NAV snapshot
and a fresh MAX series are published for every active watchlist.
Watchlists that received prices are also queued on the real-time
calculator, which publishes them again at the next 5-minute boundary.

Cycles only run while the extended session (04:00-20:00 exchange-local,
weekdays) is open. Manual refreshes go through ManualUpdateService instead.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

from navsync.config import SchedulerSettings
from navsync.data.normalize import apply_price_update
from navsync.data.store import WatchlistStore
from navsync.exceptions import BatchError, ConfigurationInvariantViolation, TransientFetchError
from navsync.logging import bind_cycle_context, get_logger
from navsync.market_hours import MS_PER_HOUR, is_extended_session_open
from navsync.models import HistoricalSeries, NavSnapshot, NavUpdate, Timeframe, UpdateSource, Watchlist
from navsync.nav.calculator import calculate_nav_performance, calculate_snapshot_return
from navsync.notifications import NotificationCenter
from navsync.provider.client import QuoteProvider
from navsync.sync.active_set import ActiveSetRegistry
from navsync.sync.event_bus import NavEventBus
from navsync.sync.rate_limiter import RateLimiter
from navsync.sync.realtime import RealtimeNavCalculator

logger = get_logger(__name__)

#: Budget the cycle constants were derived for.
REQUIRED_BATCH_SIZE = 5
REQUIRED_BATCHES_PER_CYCLE = 20
REQUIRED_CYCLE_DURATION_SECONDS = 180.0
REQUIRED_BATCH_INTERVAL_SECONDS = 9.0
REQUIRED_MAX_BATCHES_PER_MINUTE = 11
REQUIRED_CREDITS_PER_MINUTE = 55


@dataclass
class SchedulerStats:
    cycles: int = 0
    cycles_skipped_closed: int = 0
    batches_dispatched: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    batches_skipped_ceiling: int = 0
    batches_discarded_stale: int = 0
    symbols_updated: int = 0
    symbols_deferred: int = 0
    last_error: str | None = None
    last_cycle_at: float | None = None
    last_cycle_duration: float | None = None


class BatchedSyncScheduler:
    """Single driving loop for automatic price syncs.

    Each cycle carries a generation number. ``stop()`` and every new cycle
    bump the generation, and batch results are only merged while their
    generation is still current, so a stalled batch from an earlier cycle
    can never overwrite newer data.
    """

    def __init__(
        self,
        provider: QuoteProvider,
        store: WatchlistStore,
        registry: ActiveSetRegistry,
        rate_limiter: RateLimiter,
        event_bus: NavEventBus,
        notifications: NotificationCenter,
        settings: SchedulerSettings | None = None,
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
        self._settings = settings or SchedulerSettings()
        self._time_fn = time_fn

        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._batch_tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._generation = 0

        # Per-clock-minute batch ceiling
        self._minute_bucket: int | None = None
        self._batches_this_minute = 0

        self._stats = SchedulerStats()
        self._last_batch_error: BatchError | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def last_batch_error(self) -> BatchError | None:
        return self._last_batch_error

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Start the cycle loop. No-op while already running."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        try:
            self.verify_rate_limit_compliance()
        except ConfigurationInvariantViolation as e:
            logger.error("rate_limit_compliance_failed", failed_checks=e.failed_checks)

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        if self._realtime is not None:
            await self._realtime.start()
        logger.info(
            "scheduler_started",
            cycle_duration=self._settings.cycle_duration_seconds,
            batches_per_cycle=self._settings.batches_per_cycle,
            batch_size=self._settings.batch_size,
        )

    async def stop(self) -> None:
        """Stop the loop and cancel outstanding batches. In-flight results are discarded."""
        self._running = False
        self._generation += 1

        pending = list(self._batch_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._batch_tasks.clear()

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._realtime is not None:
            await self._realtime.stop()
        logger.info("scheduler_stopped", generation=self._generation)

    async def _run_loop(self) -> None:
        while self._running:
            cycle_started = self._time_fn()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("sync_cycle_error", error=str(e), exc_info=True)
                self._notifications.handle_system_error(e, {"component": "scheduler"})

            if not self._running:
                break
            elapsed = self._time_fn() - cycle_started
            await asyncio.sleep(max(0.0, self._settings.cycle_duration_seconds - elapsed))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ──────────────────────────────────────────────
    # Cycle
    # ──────────────────────────────────────────────

    def plan_batches(self, symbols: list[str]) -> tuple[list[list[str]], list[str]]:
        """Split symbols into batches, keeping at most ``batches_per_cycle``.

        Returns:
            Tuple of (batches to dispatch, symbols deferred this cycle).
        """
        size = self._settings.batch_size
        batches = [symbols[i:i + size] for i in range(0, len(symbols), size)]
        kept = batches[: self._settings.batches_per_cycle]
        deferred = [symbol for batch in batches[self._settings.batches_per_cycle:] for symbol in batch]
        return kept, deferred

    async def run_cycle(self) -> bool:
        """Run one full cycle.

        Returns:
            True if fetch work was dispatched, False if the cycle was skipped
            (session closed or nothing active).
        """
        self._generation += 1
        generation = self._generation
        bind_cycle_context(generation)
        self._stats.cycles += 1
        cycle_started = self._time_fn()

        self._registry.cleanup_old_manual_updates()
        self._notifications.clear_old_notifications()

        now_ms = int(cycle_started * 1000)
        if not is_extended_session_open(now_ms):
            self._stats.cycles_skipped_closed += 1
            logger.debug("sync_cycle_skipped_market_closed")
            return False

        symbols = self._registry.get_all_unique_tickers()
        if not symbols:
            logger.debug("sync_cycle_skipped_no_symbols")
            return False

        batches, deferred = self.plan_batches(symbols)
        if deferred:
            self._stats.symbols_deferred += len(deferred)
            logger.info("symbols_deferred_over_cycle_cap", count=len(deferred))

        logger.info(
            "sync_cycle_started",
            generation=generation,
            symbols=len(symbols),
            batches=len(batches),
        )
        self._notifications.handle_sync_status(
            "started", {"generation": generation, "symbols": len(symbols), "batches": len(batches)}
        )

        interval = self._settings.batch_interval_seconds
        tasks = []
        for index, batch in enumerate(batches):
            task = asyncio.create_task(self._run_batch(index, batch, generation, index * interval))
            self._batch_tasks.add(task)
            task.add_done_callback(self._batch_tasks.discard)
            tasks.append(task)

        deadline = len(batches) * interval + self._settings.completion_buffer_seconds
        _, pending = await asyncio.wait(tasks, timeout=deadline)
        if pending:
            logger.warning("batches_pending_at_completion", count=len(pending))

        if not self._is_current(generation):
            logger.info("sync_cycle_superseded")
            return True

        await self._complete_cycle(generation)

        self._stats.last_cycle_at = self._time_fn()
        self._stats.last_cycle_duration = self._stats.last_cycle_at - cycle_started
        return True

    def _reserve_minute_slot(self) -> bool:
        minute = int(self._time_fn() // 60)
        if minute != self._minute_bucket:
            self._minute_bucket = minute
            self._batches_this_minute = 0
        if self._batches_this_minute >= self._settings.max_batches_per_minute:
            return False
        self._batches_this_minute += 1
        return True

    async def _run_batch(self, index: int, symbols: list[str], generation: int, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if not self._is_current(generation):
            return

        batch_number = index + 1
        if not self._reserve_minute_slot():
            self._stats.batches_skipped_ceiling += 1
            logger.warning("batch_skipped_minute_ceiling", batch=batch_number, symbols=symbols)
            return

        self._stats.batches_dispatched += 1
        try:
            await self._process_batch(batch_number, symbols, generation)
            self._stats.batches_succeeded += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._last_batch_error = BatchError(batch_number, symbols, str(e))
            self._stats.batches_failed += 1
            self._stats.last_error = str(self._last_batch_error)
            logger.error("batch_failed", batch=batch_number, symbols=symbols, exc_info=True)

    async def _fetch_symbol(self, symbol: str, start_ms: int, end_ms: int) -> HistoricalSeries:
        try:
            series = await self._provider.fetch_historical_data(
                symbol,
                start_ms,
                end_ms,
                interval=self._settings.history_interval,
                output_size=self._settings.history_output_size,
            )
        except Exception as e:
            raise TransientFetchError(symbol, str(e)) from e
        if series is None or not series.historical_data:
            raise TransientFetchError(symbol, "no data returned")
        return series

    async def _process_batch(self, batch_number: int, symbols: list[str], generation: int) -> None:
        now_ms = int(self._time_fn() * 1000)
        start_ms = now_ms - self._settings.history_lookback_hours * MS_PER_HOUR

        results: dict[str, HistoricalSeries] = {}
        attempted = 0
        for symbol in symbols:
            if not self._rate_limiter.can_make_automatic_request():
                self._stats.symbols_deferred += 1
                logger.warning("automatic_pool_exhausted", batch=batch_number, symbol=symbol)
                self._notifications.handle_rate_limit_warning(self._rate_limiter.get_status())
                continue
            self._rate_limiter.record_automatic_request()
            attempted += 1
            try:
                results[symbol] = await self._fetch_symbol(symbol, start_ms, now_ms)
            except TransientFetchError as e:
                logger.warning("symbol_fetch_failed", symbol=e.symbol, reason=e.reason)

        if attempted and not results:
            self._notifications.handle_api_offline(
                BatchError(batch_number, symbols, "every symbol failed")
            )
            return
        if results:
            self._notifications.handle_api_online()

        if not self._is_current(generation):
            self._stats.batches_discarded_stale += 1
            logger.info("stale_batch_discarded", batch=batch_number, current=self._generation)
            return

        await self._merge_results(results, generation)
        logger.debug("batch_completed", batch=batch_number, updated=len(results))

    async def _merge_results(self, results: dict[str, HistoricalSeries], generation: int) -> None:
        """Write fetched history into every active watchlist holding the symbols."""
        slugs: dict[str, None] = {}
        for symbol in results:
            for slug in self._registry.get_burnlists_for_ticker(symbol):
                slugs.setdefault(slug, None)

        max_points = self._settings.max_history_points

        def merge(watchlist: Watchlist) -> None:
            watchlist.items = [
                apply_price_update(item, results[item.symbol], max_points)
                if item.symbol in results
                else item
                for item in watchlist.items
            ]

        for slug in slugs:
            if not self._is_current(generation):
                self._stats.batches_discarded_stale += 1
                return
            watchlist = await self._store.get_watchlist_by_slug(slug)
            if watchlist is None:
                logger.warning("active_watchlist_missing_from_store", slug=slug)
                continue
            updated = await self._store.update_watchlist(watchlist.id, merge)
            if self._realtime is not None:
                self._realtime.queue_aligned_calculation(slug, updated.items)

        self._stats.symbols_updated += len(results)

    async def _complete_cycle(self, generation: int) -> None:
        """Persist a snapshot and publish a MAX series for every active watchlist."""
        now_ms = int(self._time_fn() * 1000)
        published = 0

        for slug in self._registry.get_active_slugs():
            if not self._is_current(generation):
                return
            try:
                watchlist = await self._store.get_watchlist_by_slug(slug)
                if watchlist is None:
                    continue

                average, valid = calculate_snapshot_return(watchlist.items)
                snapshot = NavSnapshot(
                    slug=slug,
                    timestamp_ms=now_ms,
                    average_return=average,
                    ticker_count=len(watchlist.items),
                    valid_tickers=valid,
                )
                await self._store.save_nav_snapshot(snapshot)

                series = calculate_nav_performance(watchlist.items, Timeframe.MAX, now_ms)
                await self._event_bus.emit(
                    slug, NavUpdate(series=series, snapshot=snapshot), UpdateSource.BATCH
                )
                published += 1
            except Exception:
                logger.error("cycle_completion_failed", slug=slug, exc_info=True)

        logger.info("sync_cycle_completed", generation=generation, published=published)
        self._notifications.handle_sync_status(
            "completed", {"generation": generation, "watchlists": published}
        )

    # ──────────────────────────────────────────────
    # Self-check and status
    # ──────────────────────────────────────────────

    def verify_rate_limit_compliance(self) -> dict[str, bool]:
        """Check the cycle constants against the provider budget.

        Returns:
            Mapping of check name to result (all True).

        Raises:
            ConfigurationInvariantViolation: If any check fails.
        """
        s = self._settings
        credits_per_minute = s.max_batches_per_minute * s.batch_size
        checks = {
            "batch_size": s.batch_size == REQUIRED_BATCH_SIZE,
            "batches_per_cycle": s.batches_per_cycle == REQUIRED_BATCHES_PER_CYCLE,
            "cycle_duration": s.cycle_duration_seconds == REQUIRED_CYCLE_DURATION_SECONDS,
            "batch_interval": s.batch_interval_seconds == REQUIRED_BATCH_INTERVAL_SECONDS,
            "max_batches_per_minute": s.max_batches_per_minute == REQUIRED_MAX_BATCHES_PER_MINUTE,
            "credits_per_minute": credits_per_minute == REQUIRED_CREDITS_PER_MINUTE,
            "batches_fit_cycle": (
                s.batches_per_cycle * s.batch_interval_seconds <= s.cycle_duration_seconds
            ),
            "within_provider_budget": credits_per_minute <= self._rate_limiter.max_per_minute,
        }
        failed = [name for name, ok in checks.items() if not ok]
        if failed:
            raise ConfigurationInvariantViolation(failed)
        logger.debug("rate_limit_compliance_verified")
        return checks

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "generation": self._generation,
            "pending_batches": len(self._batch_tasks),
            "stats": asdict(self._stats),
            "last_batch_error": (
                {
                    "batch": self._last_batch_error.batch_number,
                    "symbols": self._last_batch_error.symbols,
                    "reason": self._last_batch_error.reason,
                }
                if self._last_batch_error is not None
                else None
            ),
            "config": {
                "batch_size": self._settings.batch_size,
                "batches_per_cycle": self._settings.batches_per_cycle,
                "cycle_duration_seconds": self._settings.cycle_duration_seconds,
                "batch_interval_seconds": self._settings.batch_interval_seconds,
                "max_batches_per_minute": self._settings.max_batches_per_minute,
            },
            "realtime": self._realtime.get_status() if self._realtime is not None else None,
        }
