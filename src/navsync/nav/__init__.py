"""NAV valuation -- sampling schedules and basket performance series."""

from navsync.market_hours import get_market_status
from navsync.nav.calculator import (
    calculate_dynamic_buy_price,
    calculate_nav_at_timestamp,
    calculate_nav_performance,
    calculate_snapshot_return,
    calculate_unweighted_average,
    find_closest_price_point,
    get_inactive_tickers,
    get_shared_baseline_price,
)
from navsync.nav.sampling import generate_sampling_timestamps

__all__ = [
    "calculate_dynamic_buy_price",
    "calculate_nav_at_timestamp",
    "calculate_nav_performance",
    "calculate_snapshot_return",
    "calculate_unweighted_average",
    "find_closest_price_point",
    "generate_sampling_timestamps",
    "get_inactive_tickers",
    "get_market_status",
    "get_shared_baseline_price",
]
