"""Tests for the dual-pool rate limiter."""

from navsync.config import RateLimitSettings
from navsync.sync.rate_limiter import RateLimiter

from conftest import FakeClock


def _fill_automatic(limiter: RateLimiter, count: int) -> None:
    for _ in range(count):
        assert limiter.can_make_automatic_request()
        limiter.record_automatic_request()


class TestPools:
    def test_automatic_pool_saturates_at_45(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)

        _fill_automatic(limiter, 45)

        assert limiter.can_make_automatic_request() is False
        # Manual pool is untouched by automatic traffic
        assert limiter.can_make_manual_request() is True

    def test_manual_pool_saturates_at_10(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)
        for _ in range(10):
            limiter.record_manual_request()

        assert limiter.can_make_manual_request() is False
        assert limiter.can_make_automatic_request() is True

    def test_window_slides(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)
        _fill_automatic(limiter, 45)

        clock.advance(60.5)

        assert limiter.can_make_automatic_request() is True

    def test_next_available_time(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)
        assert limiter.get_next_available_time("automatic") == 0.0

        _fill_automatic(limiter, 45)
        clock.advance(20)

        assert limiter.get_next_available_time("automatic") == 40.0
        assert limiter.get_next_available_time("manual") == 0.0

    def test_custom_budget(self, clock: FakeClock) -> None:
        limiter = RateLimiter(
            RateLimitSettings(max_calls_per_minute=20, reserved_for_manual=5), time_fn=clock
        )
        assert limiter.automatic_capacity == 15
        assert limiter.manual_capacity == 5


class TestRefreshInterval:
    def test_interval_tiers(self) -> None:
        limiter = RateLimiter()
        assert limiter.get_max_tickers_per_minute() == 225
        assert limiter.calculate_refresh_interval(10) == 60
        assert limiter.calculate_refresh_interval(225) == 60
        assert limiter.calculate_refresh_interval(226) == 90
        assert limiter.calculate_refresh_interval(450) == 90
        assert limiter.calculate_refresh_interval(451) == 120


class TestStatus:
    def test_approaching_and_at_limit(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)

        _fill_automatic(limiter, 43)
        status = limiter.get_status()
        assert status.total_requests == 43
        assert status.approaching is False  # 80% of 55 is 44

        limiter.record_automatic_request()
        assert limiter.get_status().approaching is True
        assert "Approaching" in limiter.get_status_message()

        limiter.record_automatic_request()
        for _ in range(10):
            limiter.record_manual_request()
        status = limiter.get_status()
        assert status.at_limit is True
        assert status.next_automatic_seconds == 60.0
        assert "reached" in limiter.get_status_message()

    def test_reset_clears_windows(self, clock: FakeClock) -> None:
        limiter = RateLimiter(time_fn=clock)
        _fill_automatic(limiter, 45)

        limiter.reset()

        assert limiter.get_status().total_requests == 0
