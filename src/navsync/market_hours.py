"""Exchange-local calendar helpers (NYSE/Nasdaq hours, America/New_York).

All inputs and outputs are Unix milliseconds; conversion to exchange-local
wall time happens here so DST transitions are handled in one place.
Holidays are not modelled: every weekday counts as a trading day.
"""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from navsync.models import MarketStatus

EXCHANGE_TZ = ZoneInfo("America/New_York")

#: Extended session (pre-market through after-hours) used to gate automatic syncs.
EXTENDED_OPEN_HOUR = 4
EXTENDED_CLOSE_HOUR = 20

#: Regular session boundaries, minutes after local midnight.
REGULAR_OPEN_MINUTES = 9 * 60 + 30
REGULAR_CLOSE_MINUTES = 16 * 60

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


def to_exchange_time(timestamp_ms: int) -> datetime:
    """Convert Unix milliseconds to an aware exchange-local datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=EXCHANGE_TZ)


def to_timestamp_ms(dt: datetime) -> int:
    """Convert an aware datetime to Unix milliseconds."""
    return int(dt.timestamp() * 1000)


def local_time_ms(day: date, hour: int, minute: int = 0) -> int:
    """Unix milliseconds for a wall-clock time on an exchange-local calendar day."""
    return to_timestamp_ms(
        datetime(day.year, day.month, day.day, hour, minute, tzinfo=EXCHANGE_TZ)
    )


def is_weekend(timestamp_ms: int) -> bool:
    """True if the instant falls on Saturday or Sunday, exchange-local."""
    return to_exchange_time(timestamp_ms).weekday() >= 5


def is_extended_session_open(timestamp_ms: int) -> bool:
    """True on weekdays within [04:00, 20:00) exchange-local."""
    local = to_exchange_time(timestamp_ms)
    if local.weekday() >= 5:
        return False
    return EXTENDED_OPEN_HOUR <= local.hour < EXTENDED_CLOSE_HOUR


def get_market_status(timestamp_ms: int) -> MarketStatus:
    """Classify an instant as open, pre-market, after-hours, or closed (weekend)."""
    local = to_exchange_time(timestamp_ms)
    if local.weekday() >= 5:
        return MarketStatus.CLOSED

    minutes = local.hour * 60 + local.minute
    if REGULAR_OPEN_MINUTES <= minutes < REGULAR_CLOSE_MINUTES:
        return MarketStatus.OPEN
    if minutes < REGULAR_OPEN_MINUTES:
        return MarketStatus.PRE_MARKET
    return MarketStatus.AFTER_HOURS


def trading_days_ago(trading_days: int, now_ms: int) -> int:
    """Walk back calendar days from now until ``trading_days`` weekdays were passed.

    Keeps the wall-clock time of ``now_ms``.
    """
    current = to_exchange_time(now_ms)
    counted = 0
    while counted < trading_days:
        current = current - timedelta(days=1)
        if current.weekday() < 5:
            counted += 1
    return to_timestamp_ms(current)


def start_of_year_ms(now_ms: int) -> int:
    """Midnight, January 1 of the exchange-local year containing ``now_ms``."""
    year = to_exchange_time(now_ms).year
    return local_time_ms(date(year, 1, 1), 0)
