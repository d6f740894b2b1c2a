"""Shared test fixtures for the watchlist NAV sync engine."""

from collections.abc import AsyncIterator, Callable
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

from navsync.config import AppSettings, ProviderSettings, StoreSettings
from navsync.data.database import WatchlistDatabase
from navsync.data.store import WatchlistStore
from navsync.market_hours import local_time_ms
from navsync.models import Instrument, PricePoint

#: Wednesday, regular session, exchange-local.
WEDNESDAY_10AM_MS = local_time_ms(date(2024, 1, 10), 10, 0)

InstrumentFactory = Callable[..., Instrument]


class FakeClock:
    """Callable clock returning seconds; advanced manually by tests."""

    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at Wednesday 10:00 exchange-local."""
    return FakeClock(WEDNESDAY_10AM_MS / 1000)


@pytest.fixture
def make_instrument() -> InstrumentFactory:
    """Factory building an Instrument from (timestamp_ms, price) pairs."""

    def _make(
        symbol: str,
        prices: list[tuple[int, str]],
        buy_price: str = "100",
        buy_date_ms: int | None = None,
        current_price: str | None = None,
    ) -> Instrument:
        history = [PricePoint(timestamp_ms=ts, price=Decimal(p)) for ts, p in prices]
        return Instrument(
            symbol=symbol,
            buy_price=Decimal(buy_price),
            buy_date_ms=buy_date_ms if buy_date_ms is not None else (
                history[0].timestamp_ms if history else None
            ),
            current_price=Decimal(current_price) if current_price is not None else None,
            historical_data=history,
            added_at_ms=history[0].timestamp_ms if history else 0,
        )

    return _make


@pytest.fixture
def mock_settings(tmp_path: Path) -> AppSettings:
    """Return AppSettings with test defaults (temp database, dummy API keys)."""
    return AppSettings(
        log_level="DEBUG",
        provider=ProviderSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
        ),
        store=StoreSettings(db_path=str(tmp_path / "watchlists.db")),
    )


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[WatchlistStore]:
    """WatchlistStore over a fresh SQLite file."""
    async with WatchlistDatabase(str(tmp_path / "watchlists.db")) as database:
        yield WatchlistStore(database, max_snapshots_per_watchlist=100)
