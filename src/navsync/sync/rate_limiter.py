"""Dual-pool sliding-window rate limiter for the quote provider.

The provider allows a fixed number of calls per minute. That budget is split
into an automatic pool (batch scheduler) and a manual pool reserved for
user-triggered fetches, so background syncing can never starve the user.

The limiter only answers "may I?" and records what happened; callers decide
whether to skip, defer or wait.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from navsync.config import RateLimitSettings
from navsync.logging import get_logger

logger = get_logger(__name__)

Pool = Literal["automatic", "manual"]

#: Fraction of the total budget at which the limiter reports "approaching".
APPROACHING_THRESHOLD = 0.8

_FAST_REFRESH_SECONDS = 60
_MEDIUM_REFRESH_SECONDS = 90
_SLOW_REFRESH_SECONDS = 120


@dataclass
class RateLimitStatus:
    """Snapshot of both pools within the current window."""

    automatic_requests: int
    manual_requests: int
    total_requests: int
    automatic_capacity: int
    manual_capacity: int
    max_per_minute: int
    approaching: bool
    at_limit: bool
    next_automatic_seconds: float
    next_manual_seconds: float


class RateLimiter:
    """Tracks provider calls in two trailing 60-second windows.

    ``automatic_capacity = max_per_minute - reserved_for_manual`` and
    ``manual_capacity = reserved_for_manual``. The clock is injectable so
    tests can move time without sleeping.
    """

    def __init__(
        self,
        settings: RateLimitSettings | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or RateLimitSettings()
        self._time_fn = time_fn
        self._automatic: list[float] = []
        self._manual: list[float] = []

    @property
    def max_per_minute(self) -> int:
        return self._settings.max_calls_per_minute

    @property
    def automatic_capacity(self) -> int:
        return self._settings.max_calls_per_minute - self._settings.reserved_for_manual

    @property
    def manual_capacity(self) -> int:
        return self._settings.reserved_for_manual

    @property
    def batch_size(self) -> int:
        return self._settings.batch_size

    def _prune(self) -> None:
        """Drop entries that fell out of the trailing window."""
        cutoff = self._time_fn() - self._settings.window_seconds
        self._automatic = [t for t in self._automatic if t > cutoff]
        self._manual = [t for t in self._manual if t > cutoff]

    def can_make_automatic_request(self) -> bool:
        self._prune()
        return len(self._automatic) < self.automatic_capacity

    def can_make_manual_request(self) -> bool:
        self._prune()
        return len(self._manual) < self.manual_capacity

    def record_automatic_request(self) -> None:
        self._automatic.append(self._time_fn())

    def record_manual_request(self) -> None:
        self._manual.append(self._time_fn())

    def get_next_available_time(self, pool: Pool = "automatic") -> float:
        """Seconds until the given pool has a free slot (0 if it has one now)."""
        self._prune()
        if pool == "manual":
            window, capacity = self._manual, self.manual_capacity
        else:
            window, capacity = self._automatic, self.automatic_capacity

        if len(window) < capacity:
            return 0.0
        if not window:
            # Zero-capacity pool never frees up
            return self._settings.window_seconds
        oldest = min(window)
        return max(0.0, oldest + self._settings.window_seconds - self._time_fn())

    def get_max_tickers_per_minute(self) -> int:
        """Symbols the automatic pool can cover in one minute of batches."""
        return self.automatic_capacity * self.batch_size

    def calculate_refresh_interval(self, total_instruments: int) -> int:
        """Suggested refresh interval in seconds for a universe of this size.

        60s if it fits one minute of automatic capacity, 90s if it fits two,
        otherwise 120s.
        """
        per_minute = self.get_max_tickers_per_minute()
        if total_instruments <= per_minute:
            return _FAST_REFRESH_SECONDS
        if total_instruments <= per_minute * 2:
            return _MEDIUM_REFRESH_SECONDS
        return _SLOW_REFRESH_SECONDS

    def get_status(self) -> RateLimitStatus:
        self._prune()
        automatic = len(self._automatic)
        manual = len(self._manual)
        total = automatic + manual
        return RateLimitStatus(
            automatic_requests=automatic,
            manual_requests=manual,
            total_requests=total,
            automatic_capacity=self.automatic_capacity,
            manual_capacity=self.manual_capacity,
            max_per_minute=self.max_per_minute,
            approaching=total >= self.max_per_minute * APPROACHING_THRESHOLD,
            at_limit=total >= self.max_per_minute,
            next_automatic_seconds=self.get_next_available_time("automatic"),
            next_manual_seconds=self.get_next_available_time("manual"),
        )

    def get_status_message(self) -> str:
        """One-line human-readable summary for operator notifications."""
        status = self.get_status()
        if status.at_limit:
            return (
                f"Rate limit reached ({status.total_requests}/{status.max_per_minute}). "
                f"Next automatic slot in {status.next_automatic_seconds:.0f}s."
            )
        if status.approaching:
            return (
                f"Approaching rate limit ({status.total_requests}/{status.max_per_minute})."
            )
        return f"Rate limit OK ({status.total_requests}/{status.max_per_minute})."

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._automatic.clear()
        self._manual.clear()
        logger.debug("rate_limiter_reset")
