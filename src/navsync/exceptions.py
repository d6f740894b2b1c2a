"""Custom exceptions for the watchlist NAV sync engine.

Rate limiting and closed markets are conditions the scheduler checks for,
not exceptions. Everything raised from here is caught before it can leave
the scheduler or manual-update loops.
"""


class NavSyncError(Exception):
    """Base exception for all navsync errors."""


class TransientFetchError(NavSyncError):
    """Raised when a single symbol's fetch fails; the symbol is retried next cycle."""

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class BatchError(NavSyncError):
    """Describes a batch that was abandoned while the cycle went on.

    The scheduler keeps the latest one as ``last_batch_error`` and hands one
    to the notification center when every symbol in a batch failed.
    """

    def __init__(self, batch_number: int, symbols: list[str], reason: str) -> None:
        super().__init__(f"batch {batch_number} [{', '.join(symbols)}]: {reason}")
        self.batch_number = batch_number
        self.symbols = symbols
        self.reason = reason


class ConfigurationInvariantViolation(NavSyncError):
    """Raised by the startup self-check when scheduler constants disagree."""

    def __init__(self, failed_checks: list[str]) -> None:
        super().__init__(f"rate limit compliance failed: {', '.join(failed_checks)}")
        self.failed_checks = failed_checks


class WatchlistNotFoundError(NavSyncError):
    """Raised when a watchlist id or slug is not present in the store."""
