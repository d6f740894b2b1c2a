"""Shared data models for the watchlist NAV sync engine.

CRITICAL: All prices and returns use Decimal. Never use float for prices or returns.
Timestamps are Unix milliseconds (int) unless a field name says otherwise.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class Timeframe(str, Enum):
    """Lookback window controlling reference date and sampling density."""

    DAILY = "D"
    WEEKLY = "W"
    MONTHLY = "M"
    YEAR_TO_DATE = "YTD"
    MAX = "MAX"


class MarketStatus(str, Enum):
    """Exchange session state at a given instant."""

    OPEN = "open"
    CLOSED = "closed"
    PRE_MARKET = "pre_market"
    AFTER_HOURS = "after_hours"


class UpdateSource(str, Enum):
    """Origin of a NAV event."""

    BATCH = "batch"
    MANUAL = "manual"
    REALTIME = "realtime"


class ManualUpdateStatus(str, Enum):
    """Lifecycle of a queued manual update request."""

    PENDING = "pending"
    PROCESSING = "processing"


@dataclass(frozen=True)
class PricePoint:
    """A single observed price. Usable only when price > 0."""

    timestamp_ms: int
    price: Decimal


@dataclass
class BuyDateMetadata:
    """Original buy date/price kept when the user overrides them."""

    original_buy_date_ms: int | None = None
    original_buy_price: Decimal | None = None


@dataclass
class Instrument:
    """One watchlist slot.

    historical_data is kept de-duplicated by timestamp and sorted ascending.
    buy_price/buy_date_ms belong to the user; sync merges never touch them.
    """

    symbol: str
    buy_price: Decimal
    buy_date_ms: int | None = None
    current_price: Decimal | None = None
    historical_data: list[PricePoint] = field(default_factory=list)
    added_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    buy_date_metadata: BuyDateMetadata | None = None
    incomplete: bool = False


@dataclass
class Watchlist:
    """A basket of instruments persisted as one document."""

    id: str
    slug: str
    name: str
    items: list[Instrument] = field(default_factory=list)

    @property
    def symbols(self) -> list[str]:
        return [item.symbol for item in self.items]


@dataclass
class InactiveTicker:
    """Instrument whose newest price is more than one trading day old."""

    symbol: str
    last_update_ms: int
    days_inactive: int


@dataclass
class TickerResult:
    """Per-instrument contribution from the unweighted (drift) pass."""

    symbol: str
    return_percent: Decimal
    price: Decimal
    buy_price: Decimal
    is_fallback: bool
    data_age_ms: int


@dataclass
class NAVDataPoint:
    """One point of a basket's NAV series. Ephemeral, computed on demand."""

    timestamp_ms: int
    return_percent: Decimal
    confidence_score: Decimal
    valid_tickers: int
    total_tickers: int
    data_coverage: Decimal
    fallback_tickers: int
    full_weight_tickers: int
    anomaly: bool
    market_status: MarketStatus
    unweighted_average: Decimal
    drift_warning: bool
    drift_amount: Decimal
    inactive_tickers: list[InactiveTicker] = field(default_factory=list)
    ticker_results: list[TickerResult] = field(default_factory=list)


@dataclass
class NavSnapshot:
    """Timestamped basket return persisted at the end of each sync cycle."""

    slug: str
    timestamp_ms: int
    average_return: Decimal
    ticker_count: int
    valid_tickers: int
    timeframe: Timeframe = Timeframe.MAX


@dataclass
class NavUpdate:
    """Payload carried by a NAV event."""

    series: list[NAVDataPoint]
    snapshot: NavSnapshot | None = None


@dataclass
class NavEvent:
    """A queued NAV notification for one watchlist topic."""

    slug: str
    payload: Any
    source: UpdateSource
    timestamp: float

    @property
    def is_realtime(self) -> bool:
        return self.source == UpdateSource.REALTIME


@dataclass
class ActiveSetEntry:
    """A watchlist currently open in the host application."""

    slug: str
    last_opened_at: float
    priority: int
    tickers: set[str] = field(default_factory=set)


@dataclass
class ManualUpdateRequest:
    """Queued manual refresh for a watchlist outside the active set."""

    slug: str
    requested_at: float
    status: ManualUpdateStatus = ManualUpdateStatus.PENDING


@dataclass
class HistoricalSeries:
    """Short-horizon price history returned by the quote provider."""

    symbol: str
    historical_data: list[PricePoint]


@dataclass
class Quote:
    """Latest price for one symbol from a batch quote call."""

    symbol: str
    price: Decimal
    timestamp_ms: int
