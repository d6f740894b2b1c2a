"""Watchlist persistence: async SQLite database, typed store and normalization."""

from navsync.data.database import WatchlistDatabase
from navsync.data.normalize import (
    apply_price_update,
    merge_price_history,
    normalize_instrument,
)
from navsync.data.store import WatchlistStore

__all__ = [
    "WatchlistDatabase",
    "WatchlistStore",
    "apply_price_update",
    "merge_price_history",
    "normalize_instrument",
]
