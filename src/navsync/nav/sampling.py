"""Sampling schedules: the timestamps at which a basket's NAV is evaluated.

Each timeframe has its own density, always on the exchange-local calendar
with weekends excluded:

    D    every 3 minutes within [04:00, 20:00), last 24h of observed data
    W    09:30, 12:30, 16:00 per weekday, trailing 7 calendar days
    M    09:30, 16:00 per weekday, trailing 30 calendar days (max 30 trading days)
    YTD  16:00 per weekday from January 1 of the current year
    MAX  16:00 per weekday from the basket's earliest observation

Schedules depend only on the timeframe, the basket's observed data range
and (for YTD) the current year, so repeated calls return identical lists.
"""

import time
from collections.abc import Iterable, Sequence
from datetime import timedelta

from navsync.market_hours import (
    MS_PER_DAY,
    MS_PER_MINUTE,
    is_extended_session_open,
    local_time_ms,
    start_of_year_ms,
    to_exchange_time,
)
from navsync.models import Instrument, Timeframe

INTRADAY_STEP_MS = 3 * MS_PER_MINUTE
INTRADAY_LOOKBACK_MS = MS_PER_DAY

WEEKLY_LOOKBACK_DAYS = 7
MONTHLY_LOOKBACK_DAYS = 30
MONTHLY_MAX_TRADING_DAYS = 30

OPEN_SLOT = (9, 30)
MIDDAY_SLOT = (12, 30)
CLOSE_SLOT = (16, 0)

WEEKLY_SLOTS = (OPEN_SLOT, MIDDAY_SLOT, CLOSE_SLOT)
MONTHLY_SLOTS = (OPEN_SLOT, CLOSE_SLOT)
DAILY_CLOSE_SLOTS = (CLOSE_SLOT,)


def observed_range(instruments: Iterable[Instrument]) -> tuple[int, int] | None:
    """Return (earliest, latest) timestamp across all instruments' histories."""
    timestamps = [
        point.timestamp_ms
        for instrument in instruments
        for point in instrument.historical_data
    ]
    if not timestamps:
        return None
    return min(timestamps), max(timestamps)


def generate_sampling_timestamps(
    timeframe: Timeframe | str,
    instruments: Sequence[Instrument],
    now_ms: int | None = None,
) -> list[int]:
    """Build the ordered sampling schedule for a basket.

    Args:
        timeframe: One of D, W, M, YTD, MAX.
        instruments: The basket; only their historical timestamps are read.
        now_ms: Reference "now" (only YTD depends on it). Defaults to wall clock.

    Returns:
        Ascending list of Unix-millisecond timestamps. Empty when the basket
        has no observations.
    """
    timeframe = Timeframe(timeframe)
    data_range = observed_range(instruments)
    if data_range is None:
        return []
    earliest, latest = data_range

    if timeframe == Timeframe.DAILY:
        return generate_intraday_sampling(earliest, latest)

    if timeframe == Timeframe.WEEKLY:
        start = max(latest - WEEKLY_LOOKBACK_DAYS * MS_PER_DAY, earliest)
        return generate_session_sampling(start, latest, WEEKLY_SLOTS)

    if timeframe == Timeframe.MONTHLY:
        start = max(latest - MONTHLY_LOOKBACK_DAYS * MS_PER_DAY, earliest)
        return generate_session_sampling(
            start, latest, MONTHLY_SLOTS, max_trading_days=MONTHLY_MAX_TRADING_DAYS
        )

    if timeframe == Timeframe.YEAR_TO_DATE:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return generate_session_sampling(start_of_year_ms(now_ms), latest, DAILY_CLOSE_SLOTS)

    return generate_session_sampling(earliest, latest, DAILY_CLOSE_SLOTS)


def generate_intraday_sampling(earliest_ms: int, latest_ms: int) -> list[int]:
    """One point every 3 minutes over the last 24h, extended-session weekdays only."""
    timestamps: list[int] = []
    current = max(latest_ms - INTRADAY_LOOKBACK_MS, earliest_ms)
    while current <= latest_ms:
        if is_extended_session_open(current):
            timestamps.append(current)
        current += INTRADAY_STEP_MS
    return timestamps


def generate_session_sampling(
    start_ms: int,
    end_ms: int,
    slots: Sequence[tuple[int, int]],
    max_trading_days: int | None = None,
) -> list[int]:
    """Fixed wall-clock slots on each weekday between start and end (inclusive).

    Walks exchange-local calendar days from the day containing ``start_ms``.
    ``max_trading_days`` caps how many weekdays are visited.
    """
    timestamps: list[int] = []
    if start_ms > end_ms:
        return timestamps

    day = to_exchange_time(start_ms).date()
    last_day = to_exchange_time(end_ms).date()
    trading_days = 0

    while day <= last_day:
        if max_trading_days is not None and trading_days >= max_trading_days:
            break
        if day.weekday() < 5:
            trading_days += 1
            for hour, minute in slots:
                ts = local_time_ms(day, hour, minute)
                if start_ms <= ts <= end_ms:
                    timestamps.append(ts)
        day += timedelta(days=1)

    return timestamps
