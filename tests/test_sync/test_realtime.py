"""Tests for the boundary-aligned real-time NAV calculator."""

import asyncio
from decimal import Decimal

import pytest

from navsync.config import RealtimeSettings
from navsync.market_hours import MS_PER_DAY, MS_PER_MINUTE
from navsync.models import Instrument, NavEvent, NavUpdate, UpdateSource
from navsync.sync.event_bus import NavEventBus
from navsync.sync.realtime import RealtimeNavCalculator

from conftest import FakeClock, InstrumentFactory


def _basket(
    make_instrument: InstrumentFactory, clock: FakeClock, last_price: str
) -> list[Instrument]:
    now_ms = int(clock() * 1000)
    return [
        make_instrument(
            "AAPL", [(now_ms - MS_PER_DAY, "100"), (now_ms - 5 * MS_PER_MINUTE, last_price)]
        )
    ]


@pytest.fixture
def bus(clock: FakeClock) -> NavEventBus:
    return NavEventBus(time_fn=clock)


class TestBoundaries:
    def test_next_boundary_on_five_minute_marks(self, bus: NavEventBus, clock: FakeClock) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)
        start = clock()  # 10:00 exchange-local sits on a boundary

        assert calculator.get_next_boundary() == start + 300
        assert calculator.is_near_boundary() is True

        clock.advance(10)
        assert calculator.get_time_until_next_boundary() == pytest.approx(290)
        assert calculator.is_near_boundary() is True

        clock.advance(90)
        assert calculator.is_near_boundary() is False

        clock.advance(180)  # 20s before 10:05
        assert calculator.get_next_boundary() == start + 300
        assert calculator.is_near_boundary() is True

    def test_custom_interval(self, bus: NavEventBus, clock: FakeClock) -> None:
        settings = RealtimeSettings(interval_seconds=60.0, alignment_tolerance_seconds=5.0)
        calculator = RealtimeNavCalculator(bus, settings, time_fn=clock)
        clock.advance(42)

        assert calculator.get_time_until_next_boundary() == pytest.approx(18)
        assert calculator.is_near_boundary() is False


class TestQueueing:
    def test_queue_rejected_while_stopped(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)

        basket = _basket(make_instrument, clock, "110")

        assert calculator.queue_aligned_calculation("tech", basket) is False
        assert calculator.get_status()["pending"] == 0

    @pytest.mark.asyncio
    async def test_pending_collapses_to_latest_basket(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)
        received: list[NavEvent] = []
        bus.subscribe("tech", received.append)
        await calculator.start()

        calculator.queue_aligned_calculation("tech", _basket(make_instrument, clock, "105"))
        calculator.queue_aligned_calculation("tech", _basket(make_instrument, clock, "110"))
        assert calculator.get_status()["pending"] == 1

        published = await calculator.process_pending()
        await calculator.stop()

        assert published == 1
        assert len(received) == 1
        event = received[0]
        assert event.source == UpdateSource.REALTIME
        assert event.is_realtime is True
        assert isinstance(event.payload, NavUpdate)
        assert event.payload.snapshot is None
        (point,) = event.payload.series
        assert point.timestamp_ms == int(clock() * 1000)
        assert point.return_percent == Decimal("10")
        status = calculator.get_status()
        assert status["published"] == 1
        assert status["last_aligned_at"] == clock()

    @pytest.mark.asyncio
    async def test_empty_basket_not_published(self, bus: NavEventBus, clock: FakeClock) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)
        received: list[NavEvent] = []
        bus.subscribe("tech", received.append)
        await calculator.start()

        calculator.queue_aligned_calculation("tech", [])
        published = await calculator.process_pending()
        await calculator.stop()

        assert published == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_stop_drops_pending(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)
        await calculator.start()
        calculator.queue_aligned_calculation("tech", _basket(make_instrument, clock, "110"))

        await calculator.stop()

        assert calculator.is_running is False
        assert calculator.get_status()["pending"] == 0


class TestImmediate:
    @pytest.mark.asyncio
    async def test_immediate_publish_replaces_queued(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)
        received: list[NavEvent] = []
        bus.subscribe("tech", received.append)
        await calculator.start()
        calculator.queue_aligned_calculation("tech", _basket(make_instrument, clock, "105"))

        assert await calculator.trigger_immediate_calculation(
            "tech", _basket(make_instrument, clock, "120")
        ) is True
        assert await calculator.process_pending() == 0
        await calculator.stop()

        assert len(received) == 1
        assert received[0].is_realtime is True
        assert received[0].payload.series[0].return_percent == Decimal("20")

    @pytest.mark.asyncio
    async def test_immediate_ignored_while_stopped(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        calculator = RealtimeNavCalculator(bus, time_fn=clock)

        assert await calculator.trigger_immediate_calculation(
            "tech", _basket(make_instrument, clock, "110")
        ) is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_disabled_never_starts(self, bus: NavEventBus, clock: FakeClock) -> None:
        calculator = RealtimeNavCalculator(bus, RealtimeSettings(enabled=False), time_fn=clock)

        await calculator.start()

        assert calculator.is_running is False
        assert calculator.get_status()["running"] is False
        await calculator.stop()

    @pytest.mark.asyncio
    async def test_loop_publishes_at_boundary(
        self, bus: NavEventBus, clock: FakeClock, make_instrument: InstrumentFactory
    ) -> None:
        settings = RealtimeSettings(interval_seconds=0.05, alignment_tolerance_seconds=0.01)
        calculator = RealtimeNavCalculator(bus, settings, time_fn=clock)
        received: list[NavEvent] = []
        bus.subscribe("tech", received.append)

        await calculator.start()
        await calculator.start()
        calculator.queue_aligned_calculation("tech", _basket(make_instrument, clock, "110"))

        async def _poll() -> None:
            while not received:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), 2.0)
        await calculator.stop()

        assert [e.source for e in received] == [UpdateSource.REALTIME]
        assert calculator.is_running is False
