"""Tests for the active watchlist registry and manual update queue."""

from navsync.config import RegistrySettings
from navsync.models import ManualUpdateStatus
from navsync.sync.active_set import ActiveSetRegistry

from conftest import FakeClock


class TestRegistration:
    def test_sixth_registration_evicts_least_recently_opened(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        for slug in ["a", "b", "c", "d", "e"]:
            registry.register_active(slug, [slug.upper()])
            clock.advance(1)

        registry.register_active("f", ["F"])

        assert registry.get_active_slugs() == ["b", "c", "d", "e", "f"]
        assert registry.is_active("a") is False

    def test_first_inserted_is_evicted_on_tie(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(RegistrySettings(max_active=2), time_fn=clock)
        registry.register_active("a", ["A"])
        registry.register_active("b", ["B"])

        registry.register_active("c", ["C"])

        assert registry.get_active_slugs() == ["b", "c"]

    def test_reopening_refreshes_recency(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(RegistrySettings(max_active=2), time_fn=clock)
        registry.register_active("a", ["A"])
        clock.advance(1)
        registry.register_active("b", ["B"])
        clock.advance(1)
        registry.register_active("a", ["A", "AA"])
        clock.advance(1)

        registry.register_active("c", ["C"])

        assert set(registry.get_active_slugs()) == {"a", "c"}
        assert registry.get_burnlists_for_ticker("AA") == ["a"]

    def test_unregister(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("a", ["A"])

        registry.unregister("a")
        registry.unregister("missing")

        assert registry.get_active_slugs() == []


class TestTickerUnion:
    def test_union_is_deduplicated(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("tech", ["MSFT", "AAPL"])
        registry.register_active("mega", ["AAPL", "AMZN"])

        assert registry.get_all_unique_tickers() == ["AAPL", "MSFT", "AMZN"]

    def test_reverse_index(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("tech", ["MSFT", "AAPL"])
        registry.register_active("mega", ["AAPL", "AMZN"])

        assert registry.get_burnlists_for_ticker("AAPL") == ["tech", "mega"]
        assert registry.get_burnlists_for_ticker("TSLA") == []


class TestPriority:
    def test_priority_decays_per_second(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("a", ["A"])
        assert registry.get_priority("a") == 1000

        clock.advance(250.7)
        assert registry.get_priority("a") == 750

        clock.advance(5000)
        assert registry.get_priority("a") == 0
        assert registry.get_priority("missing") == 0

    def test_system_status(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("a", ["A", "B"])
        registry.request_manual_update("z")

        status = registry.get_system_status()

        assert status["active_count"] == 1
        assert status["unique_tickers"] == 2
        assert status["manual_queue_size"] == 1


class TestManualQueue:
    def test_refuses_active_and_duplicate(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.register_active("open", ["A"])

        assert registry.request_manual_update("open") is False
        assert registry.request_manual_update("closed") is True
        assert registry.request_manual_update("closed") is False
        assert len(registry.get_manual_update_queue()) == 1

    def test_lifecycle(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.request_manual_update("x")

        request = registry.get_next_manual_update()
        assert request is not None
        assert request.status == ManualUpdateStatus.PENDING

        registry.mark_manual_update_processing("x")
        assert registry.get_next_manual_update() is None
        assert registry.is_manual_update_pending("x") is True

        registry.mark_manual_update_completed("x")
        assert registry.is_manual_update_pending("x") is False

    def test_entries_expire_after_five_minutes(self, clock: FakeClock) -> None:
        registry = ActiveSetRegistry(time_fn=clock)
        registry.request_manual_update("old")
        clock.advance(200)
        registry.request_manual_update("new")
        clock.advance(101)

        removed = registry.cleanup_old_manual_updates()

        assert removed == 1
        assert [r.slug for r in registry.get_manual_update_queue()] == ["new"]
