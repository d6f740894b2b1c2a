"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitSettings(BaseSettings):
    """Provider call budget shared by automatic and manual requests."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    max_calls_per_minute: int = 55
    reserved_for_manual: int = 10  # held back for user-triggered fetches
    batch_size: int = 5
    window_seconds: float = 60.0


class SchedulerSettings(BaseSettings):
    """Batched sync cycle parameters.

    The defaults fit the provider's 55 credits/minute budget:
    20 batches of 5 symbols, one batch every 9s, 180s per cycle,
    never more than 11 batches in a single clock minute.
    """

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    batch_size: int = 5
    batches_per_cycle: int = 20
    cycle_duration_seconds: float = 180.0
    batch_interval_seconds: float = 9.0
    max_batches_per_minute: int = 11
    completion_buffer_seconds: float = 1.0

    # Short-horizon history requested per symbol each cycle
    history_lookback_hours: int = 6
    history_interval: str = "5min"
    history_output_size: int = 72  # 6h * 12 points/hour
    max_history_points: int = 100


class RegistrySettings(BaseSettings):
    """Active watchlist registry bounds."""

    model_config = SettingsConfigDict(env_prefix="REGISTRY_")

    max_active: int = 5
    manual_update_ttl_seconds: float = 300.0


class EventBusSettings(BaseSettings):
    """NAV event bus staleness tracking."""

    model_config = SettingsConfigDict(env_prefix="EVENT_BUS_")

    stale_after_seconds: float = 300.0


class RealtimeSettings(BaseSettings):
    """Real-time NAV recompute aligned to market intervals."""

    model_config = SettingsConfigDict(env_prefix="REALTIME_")

    enabled: bool = True
    interval_seconds: float = 300.0  # 5-minute market bars
    alignment_tolerance_seconds: float = 30.0


class ProviderSettings(BaseSettings):
    """Quote provider connection settings (ccxt exchange id and credentials)."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    exchange_id: str = "bybit"
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    default_type: Literal["spot", "swap"] = "spot"


class StoreSettings(BaseSettings):
    """Watchlist document store location and retention."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/watchlists.db"
    max_snapshots_per_watchlist: int = 100


class ManualUpdateSettings(BaseSettings):
    """Manual update queue processing."""

    model_config = SettingsConfigDict(env_prefix="MANUAL_")

    enabled: bool = True
    poll_interval_seconds: float = 30.0


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    rate_limit: RateLimitSettings = RateLimitSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    registry: RegistrySettings = RegistrySettings()
    event_bus: EventBusSettings = EventBusSettings()
    realtime: RealtimeSettings = RealtimeSettings()
    provider: ProviderSettings = ProviderSettings()
    store: StoreSettings = StoreSettings()
    manual: ManualUpdateSettings = ManualUpdateSettings()
