"""Abstract quote provider interface.

The scheduler and the manual update service depend only on this contract,
keeping exchange-specific details in the concrete implementation.
"""

from abc import ABC, abstractmethod

from navsync.models import HistoricalSeries, Quote, Timeframe


class QuoteProvider(ABC):
    """Abstract base class for quote providers.

    Implementations never raise for a failed or empty fetch: they log and
    return None (history) or an empty list (quotes).
    """

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        ...

    @abstractmethod
    async def fetch_historical_data(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        interval: str = "5min",
        output_size: int = 72,
    ) -> HistoricalSeries | None:
        """Fetch short-horizon price history for one symbol.

        Returns the series ordered by timestamp ascending, or None when the
        provider has nothing for the symbol.
        """
        ...

    @abstractmethod
    async def fetch_batch_quotes(
        self, symbols: list[str], timeframe: Timeframe | str = Timeframe.DAILY
    ) -> list[Quote]:
        """Fetch latest prices for several symbols in one call."""
        ...
