"""Tests for the NAV event bus."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from navsync.models import NavEvent, UpdateSource
from navsync.sync.event_bus import NavEventBus

from conftest import FakeClock


class TestDelivery:
    @pytest.mark.asyncio
    async def test_listener_receives_event(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        listener = MagicMock()
        bus.subscribe("tech", listener)

        await bus.emit("tech", {"nav": 1}, UpdateSource.BATCH)

        event = listener.call_args.args[0]
        assert isinstance(event, NavEvent)
        assert event.slug == "tech"
        assert event.payload == {"nav": 1}
        assert event.source == UpdateSource.BATCH
        assert event.timestamp == clock.now
        assert event.is_realtime is False

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        listener = AsyncMock()
        bus.subscribe("tech", listener)

        await bus.emit("tech", None, "realtime")

        listener.assert_awaited_once()
        assert listener.await_args.args[0].is_realtime is True

    @pytest.mark.asyncio
    async def test_other_topics_not_notified(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        listener = MagicMock()
        bus.subscribe("other", listener)

        await bus.emit("tech", None)

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_reentrant_emit_keeps_fifo_order(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        seen: list[str] = []

        async def first(event: NavEvent) -> None:
            seen.append(f"first:{event.payload}")
            if event.payload == 1:
                await bus.emit("tech", 2)

        def second(event: NavEvent) -> None:
            seen.append(f"second:{event.payload}")

        bus.subscribe("tech", first)
        bus.subscribe("tech", second)

        await bus.emit("tech", 1)

        # Event 2 is queued and delivered only after every listener saw event 1
        assert seen == ["first:1", "second:1", "first:2", "second:2"]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        broken = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        bus.subscribe("tech", broken)
        bus.subscribe("tech", healthy)

        await bus.emit("tech", 1)
        await bus.emit("tech", 2)

        assert healthy.call_count == 2
        assert bus.get_status()["listener_errors"] == 2

    @pytest.mark.asyncio
    async def test_cancelled_drain_still_delivers_queued_events(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        received: list[int] = []
        blocked = asyncio.Event()

        async def listener(event: NavEvent) -> None:
            received.append(event.payload)
            if event.payload == 1:
                await bus.emit("tech", 2)  # queued behind the running drain
                blocked.set()
                await asyncio.sleep(10)

        bus.subscribe("tech", listener)
        emitter = asyncio.create_task(bus.emit("tech", 1))
        await blocked.wait()

        emitter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await emitter
        await asyncio.wait_for(bus._resume_task, 1.0)  # type: ignore[arg-type]

        assert received == [1, 2]
        assert bus.get_status()["queued"] == 0


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_unsubscribe_drops_empty_topic(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        listener = MagicMock()
        unsubscribe = bus.subscribe("tech", listener)

        unsubscribe()
        unsubscribe()
        await bus.emit("tech", 1)

        listener.assert_not_called()
        assert bus.listener_count("tech") == 0
        assert bus.get_status()["topics"] == 0


class TestStaleness:
    @pytest.mark.asyncio
    async def test_stale_after_five_minutes(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        assert bus.is_data_stale("tech") is True
        assert bus.get_time_since_last_update("tech") is None

        await bus.emit("tech", 1)
        clock.advance(299)
        assert bus.is_data_stale("tech") is False
        assert bus.get_time_since_last_update("tech") == pytest.approx(299)

        clock.advance(2)
        assert bus.is_data_stale("tech") is True

    @pytest.mark.asyncio
    async def test_clear_forgets_everything(self, clock: FakeClock) -> None:
        bus = NavEventBus(time_fn=clock)
        bus.subscribe("tech", MagicMock())
        await bus.emit("tech", 1)

        bus.clear()

        assert bus.get_last_update("tech") is None
        assert bus.listener_count("tech") == 0
