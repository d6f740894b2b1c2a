"""ETF-style NAV performance for a basket of instruments.

Every instrument is valued against its own dynamic buy price (the price at
the later of the timeframe start and the instrument's buy date) and the
basket return is the equal-weighted mean of the per-instrument simple
returns. Each point also carries data-quality signals: coverage,
confidence, anomaly, drift against an unweighted pass, and inactive
instruments.

All functions here are pure: results depend only on the instruments, the
timeframe and the supplied ``now_ms``.

CRITICAL: All computations use Decimal. Never use float.
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from navsync.market_hours import (
    MS_PER_DAY,
    get_market_status,
    start_of_year_ms,
    trading_days_ago,
)
from navsync.models import (
    InactiveTicker,
    Instrument,
    NAVDataPoint,
    PricePoint,
    TickerResult,
    Timeframe,
)
from navsync.nav.sampling import generate_sampling_timestamps

#: Precision limit for returns (12 decimal places).
_RETURN_QUANTIZE = Decimal("0.000000000001")

_HUNDRED = Decimal("100")
_ZERO = Decimal("0")
_ONE = Decimal("1")

CONFIDENCE_BOOST = Decimal("1.2")
ANOMALY_CONFIDENCE_THRESHOLD = Decimal("0.5")
DRIFT_WARNING_THRESHOLD = Decimal("1.5")  # percentage points

#: A price older than this at the sampling instant counts as carried forward.
FALLBACK_AGE_MS = MS_PER_DAY
#: One trading day without a new price marks an instrument inactive.
INACTIVE_THRESHOLD_MS = MS_PER_DAY

_WEEKLY_TRADING_DAYS = 7
_MONTHLY_TRADING_DAYS = 30


@dataclass
class UnweightedResult:
    """Outcome of the unweighted (no buy-date gate) valuation pass."""

    unweighted_average: Decimal
    valid_tickers: int
    fallback_count: int
    ticker_results: list[TickerResult] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


def sorted_history(instrument: Instrument) -> list[PricePoint]:
    """Return the instrument's history ordered by timestamp ascending."""
    return sorted(instrument.historical_data, key=lambda point: point.timestamp_ms)


def find_closest_price_point(
    history: Sequence[PricePoint], target_ms: int
) -> PricePoint | None:
    """Nearest point by absolute time difference; the first one wins a tie."""
    if not history:
        return None

    closest = history[0]
    closest_diff = abs(closest.timestamp_ms - target_ms)
    for point in history:
        diff = abs(point.timestamp_ms - target_ms)
        if diff < closest_diff:
            closest = point
            closest_diff = diff
    return closest


def simple_return(price: Decimal, buy_price: Decimal) -> Decimal:
    """Percentage change from buy_price to price, quantized to 12 places."""
    return ((price - buy_price) / buy_price * _HUNDRED).quantize(_RETURN_QUANTIZE)


def timeframe_start_ms(timeframe: Timeframe | str, now_ms: int) -> int | None:
    """Reference start of a timeframe relative to now. None for MAX."""
    timeframe = Timeframe(timeframe)
    if timeframe == Timeframe.DAILY:
        return now_ms - MS_PER_DAY
    if timeframe == Timeframe.WEEKLY:
        return trading_days_ago(_WEEKLY_TRADING_DAYS, now_ms)
    if timeframe == Timeframe.MONTHLY:
        return trading_days_ago(_MONTHLY_TRADING_DAYS, now_ms)
    if timeframe == Timeframe.YEAR_TO_DATE:
        return start_of_year_ms(now_ms)
    return None


def _effective_buy_date(instrument: Instrument, history: Sequence[PricePoint]) -> int | None:
    if instrument.buy_date_ms is not None:
        return instrument.buy_date_ms
    return history[0].timestamp_ms if history else None


def calculate_dynamic_buy_price(
    instrument: Instrument,
    timeframe: Timeframe | str,
    now_ms: int | None = None,
) -> Decimal | None:
    """Resolve the price an instrument's return is measured against.

    The reference date is max(timeframe start, buy date); MAX uses the
    instrument's own earliest data point. The price is the nearest
    observation to that date.

    Returns:
        The buy price, or None when no positive price can be resolved.
    """
    timeframe = Timeframe(timeframe)
    history = sorted_history(instrument)
    if not history:
        return None

    if now_ms is None:
        now_ms = _now_ms()

    if timeframe == Timeframe.MAX:
        target_ms = history[0].timestamp_ms
    else:
        start_ms = timeframe_start_ms(timeframe, now_ms)
        buy_date_ms = _effective_buy_date(instrument, history)
        target_ms = max(start_ms, buy_date_ms)  # type: ignore[type-var]

    closest = find_closest_price_point(history, target_ms)
    if closest is None or closest.price <= 0:
        return None
    return closest.price


def _resolve_buy_prices(
    instruments: Sequence[Instrument], timeframe: Timeframe, now_ms: int
) -> list[Decimal | None]:
    return [calculate_dynamic_buy_price(i, timeframe, now_ms) for i in instruments]


def calculate_unweighted_average(
    instruments: Sequence[Instrument],
    timestamp_ms: int,
    timeframe: Timeframe | str,
    now_ms: int | None = None,
    buy_prices: Sequence[Decimal | None] | None = None,
) -> UnweightedResult:
    """Average return of every instrument with a price, ignoring buy dates.

    Also flags instruments whose nearest price is more than a day older
    than the sampling instant (carried forward).
    """
    timeframe = Timeframe(timeframe)
    if now_ms is None:
        now_ms = _now_ms()
    if buy_prices is None:
        buy_prices = _resolve_buy_prices(instruments, timeframe, now_ms)

    total = _ZERO
    valid = 0
    fallback_count = 0
    results: list[TickerResult] = []

    for instrument, buy_price in zip(instruments, buy_prices):
        point = find_closest_price_point(sorted_history(instrument), timestamp_ms)
        if point is None or point.price <= 0 or buy_price is None or buy_price <= 0:
            continue

        ticker_return = simple_return(point.price, buy_price)
        total += ticker_return
        valid += 1

        data_age_ms = timestamp_ms - point.timestamp_ms
        is_fallback = data_age_ms > FALLBACK_AGE_MS
        if is_fallback:
            fallback_count += 1

        results.append(
            TickerResult(
                symbol=instrument.symbol,
                return_percent=ticker_return,
                price=point.price,
                buy_price=buy_price,
                is_fallback=is_fallback,
                data_age_ms=data_age_ms,
            )
        )

    average = (total / valid).quantize(_RETURN_QUANTIZE) if valid else _ZERO
    return UnweightedResult(
        unweighted_average=average,
        valid_tickers=valid,
        fallback_count=fallback_count,
        ticker_results=results,
    )


def get_inactive_tickers(
    instruments: Sequence[Instrument], timestamp_ms: int
) -> list[InactiveTicker]:
    """Instruments whose newest observation is over a trading day older than timestamp_ms."""
    inactive: list[InactiveTicker] = []
    for instrument in instruments:
        if not instrument.historical_data:
            continue
        latest = max(instrument.historical_data, key=lambda point: point.timestamp_ms)
        data_age_ms = timestamp_ms - latest.timestamp_ms
        if data_age_ms > INACTIVE_THRESHOLD_MS:
            inactive.append(
                InactiveTicker(
                    symbol=instrument.symbol,
                    last_update_ms=latest.timestamp_ms,
                    days_inactive=data_age_ms // MS_PER_DAY,
                )
            )
    return inactive


def calculate_nav_at_timestamp(
    instruments: Sequence[Instrument],
    timestamp_ms: int,
    timeframe: Timeframe | str,
    now_ms: int | None = None,
    buy_prices: Sequence[Decimal | None] | None = None,
) -> NAVDataPoint:
    """Value the basket at one sampling instant.

    An instrument contributes only if it has a positive price near the
    instant, a positive dynamic buy price, and a buy date at or before the
    instant. The point is produced even when nothing qualifies (return 0).
    """
    timeframe = Timeframe(timeframe)
    if now_ms is None:
        now_ms = _now_ms()
    if buy_prices is None:
        buy_prices = _resolve_buy_prices(instruments, timeframe, now_ms)

    total = _ZERO
    valid = 0

    for instrument, buy_price in zip(instruments, buy_prices):
        history = sorted_history(instrument)
        point = find_closest_price_point(history, timestamp_ms)
        if point is None or point.price <= 0:
            continue
        if buy_price is None or buy_price <= 0:
            continue

        buy_date_ms = _effective_buy_date(instrument, history)
        if buy_date_ms is not None and buy_date_ms > timestamp_ms:
            continue  # not yet part of the basket

        total += simple_return(point.price, buy_price)
        valid += 1

    average = (total / valid).quantize(_RETURN_QUANTIZE) if valid else _ZERO

    unweighted = calculate_unweighted_average(
        instruments, timestamp_ms, timeframe, now_ms, buy_prices
    )
    drift_amount = abs(average - unweighted.unweighted_average)

    total_tickers = len(instruments)
    data_coverage = Decimal(valid) / Decimal(total_tickers) if total_tickers else _ZERO
    confidence_score = min(_ONE, data_coverage * CONFIDENCE_BOOST)

    return NAVDataPoint(
        timestamp_ms=timestamp_ms,
        return_percent=average,
        confidence_score=confidence_score,
        valid_tickers=valid,
        total_tickers=total_tickers,
        data_coverage=data_coverage,
        fallback_tickers=unweighted.fallback_count,
        full_weight_tickers=valid - unweighted.fallback_count,
        anomaly=confidence_score < ANOMALY_CONFIDENCE_THRESHOLD,
        market_status=get_market_status(timestamp_ms),
        unweighted_average=unweighted.unweighted_average,
        drift_warning=drift_amount > DRIFT_WARNING_THRESHOLD,
        drift_amount=drift_amount,
        inactive_tickers=get_inactive_tickers(instruments, timestamp_ms),
        ticker_results=unweighted.ticker_results,
    )


def calculate_nav_performance(
    instruments: Sequence[Instrument],
    timeframe: Timeframe | str,
    now_ms: int | None = None,
) -> list[NAVDataPoint]:
    """Compute the NAV series for a basket over a timeframe.

    Args:
        instruments: The basket.
        timeframe: One of D, W, M, YTD, MAX.
        now_ms: Reference "now". Defaults to wall clock.

    Returns:
        One NAVDataPoint per sampling timestamp, in order. Empty for an
        empty basket or a basket without observations.
    """
    if not instruments:
        return []

    timeframe = Timeframe(timeframe)
    if now_ms is None:
        now_ms = _now_ms()

    schedule = generate_sampling_timestamps(timeframe, instruments, now_ms)
    if not schedule:
        return []

    buy_prices = _resolve_buy_prices(instruments, timeframe, now_ms)
    return [
        calculate_nav_at_timestamp(instruments, ts, timeframe, now_ms, buy_prices)
        for ts in schedule
    ]


def get_shared_baseline_price(
    instruments: Sequence[Instrument],
    timeframe: Timeframe | str,
    now_ms: int | None = None,
) -> Decimal:
    """Average reference price of the basket for per-row display.

    Uses the same buy-price resolution as the NAV series so row display and
    chart never disagree. MAX averages the dynamic buy prices; other
    timeframes average each instrument's price at the first sampling point.
    Returns 0 when nothing resolves.
    """
    if not instruments:
        return _ZERO

    timeframe = Timeframe(timeframe)
    if now_ms is None:
        now_ms = _now_ms()

    if timeframe == Timeframe.MAX:
        prices = [p for p in _resolve_buy_prices(instruments, timeframe, now_ms) if p]
    else:
        schedule = generate_sampling_timestamps(timeframe, instruments, now_ms)
        if not schedule:
            return _ZERO
        prices = []
        for instrument in instruments:
            point = find_closest_price_point(sorted_history(instrument), schedule[0])
            if point is not None and point.price > 0:
                prices.append(point.price)

    if not prices:
        return _ZERO
    return (sum(prices, _ZERO) / len(prices)).quantize(_RETURN_QUANTIZE)


def calculate_snapshot_return(instruments: Sequence[Instrument]) -> tuple[Decimal, int]:
    """Equal-weighted return of current price against oldest retained price.

    Used for the timestamped datapoint saved at the end of each sync cycle.

    Returns:
        Tuple of (average return percent, number of instruments that contributed).
    """
    total = _ZERO
    valid = 0
    for instrument in instruments:
        history = sorted_history(instrument)
        if not history:
            continue
        oldest_price = history[0].price
        current_price = instrument.current_price or history[-1].price
        if oldest_price > 0 and current_price > 0:
            total += simple_return(current_price, oldest_price)
            valid += 1

    average = (total / valid).quantize(_RETURN_QUANTIZE) if valid else _ZERO
    return average, valid
