"""In-process publish/subscribe channel for NAV updates, one topic per watchlist.

Events go through a single FIFO queue and are delivered one at a time, so
listeners always see updates in emission order, also when a listener emits
again from inside its callback.

If the emitting task is cancelled while a listener runs, events queued
behind it are still delivered by a follow-up task.
"""

import asyncio
import inspect
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from navsync.config import EventBusSettings
from navsync.logging import get_logger
from navsync.models import NavEvent, UpdateSource

logger = get_logger(__name__)

Listener = Callable[[NavEvent], Awaitable[None] | None]


class NavEventBus:
    """Topic-keyed NAV event fan-out with staleness tracking."""

    def __init__(
        self,
        settings: EventBusSettings | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or EventBusSettings()
        self._time_fn = time_fn
        self._listeners: dict[str, list[Listener]] = {}
        self._queue: deque[NavEvent] = deque()
        self._draining = False
        self._resume_task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_update: dict[str, float] = {}
        self._delivered = 0
        self._listener_errors = 0

    def subscribe(self, slug: str, callback: Listener) -> Callable[[], None]:
        """Register a listener for one watchlist.

        Returns:
            A function that removes this listener. Removing the last listener
            of a topic drops the topic.
        """
        self._listeners.setdefault(slug, []).append(callback)
        logger.debug("nav_listener_subscribed", slug=slug)

        def unsubscribe() -> None:
            listeners = self._listeners.get(slug)
            if listeners is None or callback not in listeners:
                return
            listeners.remove(callback)
            if not listeners:
                del self._listeners[slug]
            logger.debug("nav_listener_unsubscribed", slug=slug)

        return unsubscribe

    def listener_count(self, slug: str) -> int:
        return len(self._listeners.get(slug, []))

    async def emit(
        self,
        slug: str,
        payload: Any,
        source: UpdateSource | str = UpdateSource.BATCH,
    ) -> None:
        """Queue an event and deliver it unless a drain is already running."""
        event = NavEvent(
            slug=slug,
            payload=payload,
            source=UpdateSource(source),
            timestamp=self._time_fn(),
        )
        self._queue.append(event)
        self._last_update[slug] = event.timestamp

        if self._draining:
            # The active drain picks it up after the current event
            return
        await self._drain()

    async def _drain(self) -> None:
        self._draining = True
        try:
            while self._queue:
                event = self._queue.popleft()
                await self._deliver(event)
        finally:
            self._draining = False
            if self._queue:
                # Cancelled mid-drain: deliver the remainder from a fresh task
                logger.warning("nav_drain_interrupted", remaining=len(self._queue))
                self._resume_task = asyncio.create_task(self._drain())

    async def _deliver(self, event: NavEvent) -> None:
        # Copy so listeners may unsubscribe while being called
        for callback in list(self._listeners.get(event.slug, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                self._delivered += 1
            except Exception:
                self._listener_errors += 1
                logger.error(
                    "nav_listener_failed",
                    slug=event.slug,
                    source=event.source.value,
                    exc_info=True,
                )

    def get_last_update(self, slug: str) -> float | None:
        return self._last_update.get(slug)

    def get_time_since_last_update(self, slug: str) -> float | None:
        last = self._last_update.get(slug)
        if last is None:
            return None
        return self._time_fn() - last

    def is_data_stale(self, slug: str) -> bool:
        """True if no event for this watchlist landed within the staleness window."""
        elapsed = self.get_time_since_last_update(slug)
        return elapsed is None or elapsed > self._settings.stale_after_seconds

    def clear(self) -> None:
        """Drop all listeners, queued events and update times."""
        self._listeners.clear()
        self._queue.clear()
        self._last_update.clear()
        logger.debug("nav_event_bus_cleared")

    def get_status(self) -> dict:
        return {
            "topics": len(self._listeners),
            "listeners": sum(len(cbs) for cbs in self._listeners.values()),
            "queued": len(self._queue),
            "delivered": self._delivered,
            "listener_errors": self._listener_errors,
            "stale_topics": [slug for slug in self._listeners if self.is_data_stale(slug)],
        }
