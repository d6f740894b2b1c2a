"""Operator-facing notification sink.

Collects status events (provider offline/online, rate-limit pressure, manual
update progress, sync cycles, system errors), keeps a short history and fans
them out to registered callbacks. This is the only path by which failures
become visible to a user; everything else just logs.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from navsync.logging import get_logger

if TYPE_CHECKING:
    from navsync.sync.rate_limiter import RateLimitStatus

logger = get_logger(__name__)

DEFAULT_MAX_AGE_SECONDS = 3600.0
DEFAULT_MAX_HISTORY = 100


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationType(str, Enum):
    API_OFFLINE = "api-offline"
    API_ONLINE = "api-online"
    RATE_LIMIT_REACHED = "rate-limit-reached"
    RATE_LIMIT_APPROACHING = "rate-limit-approaching"
    MANUAL_UPDATE = "manual-update"
    SYSTEM_ERROR = "system-error"
    SYNC_STATUS = "sync-status"


@dataclass
class Notification:
    type: NotificationType
    message: str
    severity: Severity
    timestamp: float
    details: str | dict | None = None
    context: dict[str, Any] = field(default_factory=dict)


NotificationCallback = Callable[[NotificationType, Notification], None]


class NotificationCenter:
    """In-memory notification history with callback fan-out.

    History keeps the newest ``max_history`` entries; the scheduler also
    drops entries older than an hour once per cycle.
    """

    def __init__(
        self,
        time_fn: Callable[[], float] = time.time,
        max_history: int = DEFAULT_MAX_HISTORY,
    ) -> None:
        self._time_fn = time_fn
        self._max_history = max_history
        self._notifications: list[Notification] = []
        self._callbacks: list[NotificationCallback] = []
        self._api_online = True
        self._last_api_check = time_fn()

    def add_callback(self, callback: NotificationCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove_callback(self, callback: NotificationCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def notify(self, notification_type: NotificationType, notification: Notification) -> None:
        """Invoke every callback. A failing callback does not affect the others."""
        for callback in list(self._callbacks):
            try:
                callback(notification_type, notification)
            except Exception:
                logger.error(
                    "notification_callback_failed",
                    type=notification_type.value,
                    exc_info=True,
                )

    def _publish(
        self,
        notification_type: NotificationType,
        message: str,
        severity: Severity,
        details: str | dict | None = None,
        context: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            type=notification_type,
            message=message,
            severity=severity,
            timestamp=self._time_fn(),
            details=details,
            context=context or {},
        )
        self._notifications.append(notification)
        if len(self._notifications) > self._max_history:
            del self._notifications[: len(self._notifications) - self._max_history]
        self.notify(notification_type, notification)
        return notification

    # ──────────────────────────────────────────────
    # Handlers
    # ──────────────────────────────────────────────

    def handle_api_offline(self, error: BaseException | None = None) -> Notification:
        self._api_online = False
        self._last_api_check = self._time_fn()
        logger.warning("provider_offline", error=str(error) if error else None)
        return self._publish(
            NotificationType.API_OFFLINE,
            "API is offline. Using cached data.",
            Severity.WARNING,
            details=str(error) if error else "Unknown error",
        )

    def handle_api_online(self) -> Notification | None:
        """Publish only on an offline -> online transition."""
        was_offline = not self._api_online
        self._api_online = True
        self._last_api_check = self._time_fn()
        if not was_offline:
            return None
        logger.info("provider_online")
        return self._publish(NotificationType.API_ONLINE, "API is back online.", Severity.SUCCESS)

    def handle_rate_limit_warning(self, status: RateLimitStatus) -> Notification | None:
        details = f"{status.total_requests}/{status.max_per_minute} calls"
        if status.at_limit:
            logger.warning("rate_limit_reached", total=status.total_requests)
            return self._publish(
                NotificationType.RATE_LIMIT_REACHED,
                "Rate limit reached. Waiting for reset...",
                Severity.ERROR,
                details=details,
            )
        if status.approaching:
            logger.warning("rate_limit_approaching", total=status.total_requests)
            return self._publish(
                NotificationType.RATE_LIMIT_APPROACHING,
                "Approaching rate limit.",
                Severity.WARNING,
                details=details,
            )
        return None

    def handle_manual_update_status(self, slug: str, status: str) -> Notification:
        severity = Severity.SUCCESS if status == "completed" else Severity.INFO
        return self._publish(
            NotificationType.MANUAL_UPDATE,
            f"Manual update {status} for {slug}",
            severity,
            context={"slug": slug, "status": status},
        )

    def handle_system_error(
        self, error: BaseException | str | None, context: dict[str, Any] | None = None
    ) -> Notification:
        logger.error("system_error", error=str(error), context=context)
        return self._publish(
            NotificationType.SYSTEM_ERROR,
            "System error occurred",
            Severity.ERROR,
            details=str(error) if error else "Unknown error",
            context=context,
        )

    def handle_sync_status(self, status: str, details: dict | None = None) -> Notification:
        severity = Severity.SUCCESS if status == "completed" else Severity.INFO
        return self._publish(
            NotificationType.SYNC_STATUS, f"Sync {status}", severity, details=details
        )

    # ──────────────────────────────────────────────
    # History
    # ──────────────────────────────────────────────

    def get_recent_notifications(self, limit: int = 10) -> list[Notification]:
        """Newest first."""
        return list(reversed(self._notifications[-limit:])) if limit > 0 else []

    def clear_old_notifications(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        cutoff = self._time_fn() - max_age_seconds
        before = len(self._notifications)
        self._notifications = [n for n in self._notifications if n.timestamp > cutoff]
        removed = before - len(self._notifications)
        if removed:
            logger.debug("notifications_cleared", removed=removed)
        return removed

    def get_stats(self) -> dict:
        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for notification in self._notifications:
            by_type[notification.type.value] = by_type.get(notification.type.value, 0) + 1
            by_severity[notification.severity.value] = (
                by_severity.get(notification.severity.value, 0) + 1
            )
        return {
            "total": len(self._notifications),
            "by_type": by_type,
            "by_severity": by_severity,
        }

    def get_api_status(self) -> dict:
        return {
            "status": "online" if self._api_online else "offline",
            "is_online": self._api_online,
            "last_check": self._last_api_check,
        }

    def reset(self) -> None:
        self._notifications.clear()
        self._api_online = True
        self._last_api_check = self._time_fn()
        logger.debug("notification_center_reset")
