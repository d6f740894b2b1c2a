"""Sync layer -- rate limiting, active set tracking, NAV events, batch, manual and real-time syncs."""

from navsync.sync.active_set import ActiveSetRegistry
from navsync.sync.event_bus import NavEventBus
from navsync.sync.manual import ManualUpdateService
from navsync.sync.rate_limiter import RateLimiter, RateLimitStatus
from navsync.sync.realtime import RealtimeNavCalculator
from navsync.sync.scheduler import BatchedSyncScheduler

__all__ = [
    "ActiveSetRegistry",
    "BatchedSyncScheduler",
    "ManualUpdateService",
    "NavEventBus",
    "RateLimitStatus",
    "RateLimiter",
    "RealtimeNavCalculator",
]
