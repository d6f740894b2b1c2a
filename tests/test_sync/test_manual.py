"""Tests for ManualUpdateService."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from navsync.config import ManualUpdateSettings, RateLimitSettings
from navsync.data.store import WatchlistStore
from navsync.exceptions import WatchlistNotFoundError
from navsync.market_hours import MS_PER_DAY, MS_PER_MINUTE
from navsync.models import (
    HistoricalSeries,
    Instrument,
    PricePoint,
    Quote,
    UpdateSource,
    Watchlist,
)
from navsync.notifications import NotificationCenter, NotificationType
from navsync.sync.active_set import ActiveSetRegistry
from navsync.sync.event_bus import NavEventBus
from navsync.sync.manual import ManualUpdateService
from navsync.sync.rate_limiter import RateLimiter

from conftest import FakeClock


def _watchlist(now_ms: int, *symbols: str) -> Watchlist:
    start = now_ms - MS_PER_DAY
    return Watchlist(
        id="w1",
        slug="dividends",
        name="Dividends",
        items=[
            Instrument(
                symbol=symbol,
                buy_price=Decimal("50"),
                buy_date_ms=start,
                historical_data=[PricePoint(start, Decimal("50"))],
                added_at_ms=start,
            )
            for symbol in symbols
        ],
    )


def _provider(now_ms: int) -> AsyncMock:
    provider = AsyncMock()
    provider.fetch_historical_data = AsyncMock(
        side_effect=lambda symbol, *a, **kw: HistoricalSeries(
            symbol=symbol,
            historical_data=[PricePoint(now_ms - 5 * MS_PER_MINUTE, Decimal("55"))],
        )
    )
    return provider


def _service(
    store: WatchlistStore,
    clock: FakeClock,
    provider: AsyncMock,
    rate_limit: RateLimitSettings | None = None,
    realtime: AsyncMock | None = None,
) -> tuple[ManualUpdateService, ActiveSetRegistry, RateLimiter, NavEventBus, NotificationCenter]:
    registry = ActiveSetRegistry(time_fn=clock)
    rate_limiter = RateLimiter(rate_limit, time_fn=clock)
    event_bus = NavEventBus(time_fn=clock)
    notifications = NotificationCenter(time_fn=clock)
    service = ManualUpdateService(
        provider=provider,
        store=store,
        registry=registry,
        rate_limiter=rate_limiter,
        event_bus=event_bus,
        notifications=notifications,
        settings=ManualUpdateSettings(poll_interval_seconds=0.01),
        time_fn=clock,
        realtime=realtime,
    )
    return service, registry, rate_limiter, event_bus, notifications


class TestImmediateUpdate:
    @pytest.mark.asyncio
    async def test_update_uses_manual_pool_and_publishes(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        now_ms = int(clock() * 1000)
        await store.save_watchlist(_watchlist(now_ms, "KO", "PEP"))
        service, _, rate_limiter, event_bus, _ = _service(store, clock, _provider(now_ms))
        received = []
        event_bus.subscribe("dividends", received.append)

        series = await service.update_watchlist("dividends")

        status = rate_limiter.get_status()
        assert status.manual_requests == 2
        assert status.automatic_requests == 0
        assert received[0].source == UpdateSource.MANUAL
        assert received[0].payload.series == series

        ko = (await store.get_watchlist_by_slug("dividends")).items[0]
        assert ko.current_price == Decimal("55")
        assert ko.buy_price == Decimal("50")

    @pytest.mark.asyncio
    async def test_manual_pool_exhaustion_skips_symbols(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        now_ms = int(clock() * 1000)
        provider = _provider(now_ms)
        service, *_ = _service(
            store, clock, provider, rate_limit=RateLimitSettings(reserved_for_manual=1)
        )

        results = await service.fetch_symbols(["KO", "PEP", "MO"])

        assert list(results) == ["KO"]
        assert provider.fetch_historical_data.await_count == 1

    @pytest.mark.asyncio
    async def test_provider_error_is_skipped(self, store: WatchlistStore, clock: FakeClock) -> None:
        provider = AsyncMock()
        provider.fetch_historical_data = AsyncMock(side_effect=RuntimeError("timeout"))
        service, *_ = _service(store, clock, provider)

        assert await service.fetch_symbols(["KO"]) == {}

    @pytest.mark.asyncio
    async def test_unknown_watchlist(self, store: WatchlistStore, clock: FakeClock) -> None:
        service, *_ = _service(store, clock, AsyncMock())
        with pytest.raises(WatchlistNotFoundError):
            await service.update_watchlist("missing")

    @pytest.mark.asyncio
    async def test_refresh_quotes_sets_current_price(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        now_ms = int(clock() * 1000)
        await store.save_watchlist(_watchlist(now_ms, "KO", "PEP"))
        provider = AsyncMock()
        provider.fetch_batch_quotes = AsyncMock(
            return_value=[Quote(symbol="KO", price=Decimal("61.5"), timestamp_ms=now_ms)]
        )
        service, *_ = _service(store, clock, provider)

        updated = await service.refresh_quotes("dividends")

        assert updated == 1
        ko, pep = (await store.get_watchlist_by_slug("dividends")).items
        assert ko.current_price == Decimal("61.5")
        assert pep.current_price is None

    @pytest.mark.asyncio
    async def test_refresh_quotes_publishes_realtime_nav(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        now_ms = int(clock() * 1000)
        await store.save_watchlist(_watchlist(now_ms, "KO"))
        provider = AsyncMock()
        provider.fetch_batch_quotes = AsyncMock(
            return_value=[Quote(symbol="KO", price=Decimal("61.5"), timestamp_ms=now_ms)]
        )
        realtime = AsyncMock()
        service, *_ = _service(store, clock, provider, realtime=realtime)

        await service.refresh_quotes("dividends")

        realtime.trigger_immediate_calculation.assert_awaited_once()
        slug, items = realtime.trigger_immediate_calculation.await_args.args
        assert slug == "dividends"
        assert items[0].current_price == Decimal("61.5")


class TestQueue:
    @pytest.mark.asyncio
    async def test_request_and_process(self, store: WatchlistStore, clock: FakeClock) -> None:
        now_ms = int(clock() * 1000)
        await store.save_watchlist(_watchlist(now_ms, "KO"))
        service, registry, _, _, notifications = _service(store, clock, _provider(now_ms))

        assert service.request_update("dividends") is True
        assert service.request_update("dividends") is False

        assert await service.process_next() is True
        assert await service.process_next() is False

        assert registry.get_manual_update_queue() == []
        statuses = [
            n.context["status"]
            for n in reversed(notifications.get_recent_notifications())
            if n.type == NotificationType.MANUAL_UPDATE
        ]
        assert statuses == ["queued", "processing", "completed"]

    @pytest.mark.asyncio
    async def test_active_watchlist_is_not_queued(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        service, registry, *_ = _service(store, clock, AsyncMock())
        registry.register_active("dividends", ["KO"])

        assert service.request_update("dividends") is False

    @pytest.mark.asyncio
    async def test_unknown_slug_is_dropped_from_queue(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        service, registry, _, _, notifications = _service(store, clock, AsyncMock())
        service.request_update("ghost")

        assert await service.process_next() is True

        assert registry.is_manual_update_pending("ghost") is False
        assert notifications.get_recent_notifications(1)[0].context["status"] == "failed"

    @pytest.mark.asyncio
    async def test_drain_queue_expires_then_processes(
        self, store: WatchlistStore, clock: FakeClock
    ) -> None:
        now_ms = int(clock() * 1000)
        await store.save_watchlist(_watchlist(now_ms, "KO"))
        service, registry, *_ = _service(store, clock, _provider(now_ms))
        service.request_update("expired")
        clock.advance(301)
        service.request_update("dividends")

        processed = await service.drain_queue()

        assert processed == 1
        assert registry.get_manual_update_queue() == []

    @pytest.mark.asyncio
    async def test_worker_start_stop(self, store: WatchlistStore, clock: FakeClock) -> None:
        service, *_ = _service(store, clock, AsyncMock())

        await service.start()
        await service.stop()

        assert service._task is None
