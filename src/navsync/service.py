"""Wiring and lifecycle for host applications.

Builds the component graph from settings and exposes start/stop for the
whole subsystem. There is no network surface: the host calls the registry
to open/close watchlists, subscribes to the event bus for NAV updates and
reads the store.

Component wiring order (in build_components):
1. WatchlistDatabase + WatchlistStore
2. QuoteProvider (ccxt)
3. RateLimiter, ActiveSetRegistry, NavEventBus, NotificationCenter
4. BatchedSyncScheduler
5. ManualUpdateService
"""

from typing import Any, Self

from navsync.config import AppSettings
from navsync.data.database import WatchlistDatabase
from navsync.data.store import WatchlistStore
from navsync.logging import get_logger, setup_logging
from navsync.notifications import NotificationCenter
from navsync.provider.ccxt_provider import CcxtQuoteProvider
from navsync.provider.client import QuoteProvider
from navsync.sync.active_set import ActiveSetRegistry
from navsync.sync.event_bus import NavEventBus
from navsync.sync.manual import ManualUpdateService
from navsync.sync.rate_limiter import RateLimiter
from navsync.sync.realtime import RealtimeNavCalculator
from navsync.sync.scheduler import BatchedSyncScheduler

logger = get_logger(__name__)


def build_components(
    settings: AppSettings, provider: QuoteProvider | None = None
) -> dict[str, Any]:
    """Build all components from settings.

    Does NOT connect the database or the provider -- that happens in
    NavSyncService.start().

    Args:
        settings: Application-wide settings.
        provider: Quote provider override; defaults to a CcxtQuoteProvider.

    Returns:
        Dict mapping component names to instances.
    """
    database = WatchlistDatabase(settings.store.db_path)
    store = WatchlistStore(database, settings.store.max_snapshots_per_watchlist)

    if provider is None:
        provider = CcxtQuoteProvider(settings.provider)
        if not settings.provider.api_key.get_secret_value():
            logger.info("no_provider_api_key", note="Public market data endpoints only.")

    rate_limiter = RateLimiter(settings.rate_limit)
    registry = ActiveSetRegistry(settings.registry)
    event_bus = NavEventBus(settings.event_bus)
    notifications = NotificationCenter()
    realtime = RealtimeNavCalculator(event_bus, settings.realtime)

    scheduler = BatchedSyncScheduler(
        provider=provider,
        store=store,
        registry=registry,
        rate_limiter=rate_limiter,
        event_bus=event_bus,
        notifications=notifications,
        settings=settings.scheduler,
        realtime=realtime,
    )
    manual = ManualUpdateService(
        provider=provider,
        store=store,
        registry=registry,
        rate_limiter=rate_limiter,
        event_bus=event_bus,
        notifications=notifications,
        settings=settings.manual,
        history_settings=settings.scheduler,
        realtime=realtime,
    )

    return {
        "settings": settings,
        "database": database,
        "store": store,
        "provider": provider,
        "rate_limiter": rate_limiter,
        "registry": registry,
        "event_bus": event_bus,
        "notifications": notifications,
        "scheduler": scheduler,
        "realtime": realtime,
        "manual": manual,
    }


class NavSyncService:
    """The whole sync subsystem behind one start/stop pair.

    Usage:
        async with NavSyncService(AppSettings()) as service:
            service.registry.register_active("tech", ["AAPL", "MSFT"])
            unsubscribe = service.event_bus.subscribe("tech", on_nav)
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        provider: QuoteProvider | None = None,
        configure_logging: bool = False,
    ) -> None:
        self.settings = settings or AppSettings()
        if configure_logging:
            setup_logging(self.settings.log_level)
        components = build_components(self.settings, provider)
        self.database: WatchlistDatabase = components["database"]
        self.store: WatchlistStore = components["store"]
        self.provider: QuoteProvider = components["provider"]
        self.rate_limiter: RateLimiter = components["rate_limiter"]
        self.registry: ActiveSetRegistry = components["registry"]
        self.event_bus: NavEventBus = components["event_bus"]
        self.notifications: NotificationCenter = components["notifications"]
        self.scheduler: BatchedSyncScheduler = components["scheduler"]
        self.realtime: RealtimeNavCalculator = components["realtime"]
        self.manual: ManualUpdateService = components["manual"]
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Connect storage and provider, then start the scheduler and manual worker."""
        if self._started:
            logger.warning("nav_sync_service_already_running")
            return
        await self.database.connect()
        try:
            await self.provider.connect()
            self.notifications.handle_api_online()
        except Exception as e:
            # Scheduler keeps retrying each cycle
            logger.error("provider_connect_failed", error=str(e))
            self.notifications.handle_api_offline(e)
        await self.scheduler.start()
        await self.manual.start()
        self._started = True
        logger.info("nav_sync_service_started")

    async def stop(self) -> None:
        """Stop loops first, then release provider and database resources."""
        if not self._started:
            return
        await self.manual.stop()
        await self.scheduler.stop()
        try:
            await self.provider.close()
        except Exception:
            logger.warning("provider_close_failed", exc_info=True)
        await self.database.close()
        self._started = False
        logger.info("nav_sync_service_stopped")

    def get_status(self) -> dict:
        return {
            "running": self._started,
            "scheduler": self.scheduler.get_status(),
            "realtime": self.realtime.get_status(),
            "registry": self.registry.get_system_status(),
            "rate_limit": self.rate_limiter.get_status_message(),
            "event_bus": self.event_bus.get_status(),
            "notifications": self.notifications.get_stats(),
            "api": self.notifications.get_api_status(),
        }

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.stop()
