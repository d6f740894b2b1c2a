"""Quote provider implementation via ccxt async.

Wraps a ``ccxt.async_support`` exchange (chosen by id) with market loading,
OHLCV-based price history and ticker-based batch quotes.
"""

import ccxt.async_support as ccxt_async

from navsync.config import ProviderSettings
from navsync.data.normalize import parse_decimal, parse_timestamp_ms
from navsync.logging import get_logger
from navsync.models import HistoricalSeries, PricePoint, Quote, Timeframe
from navsync.provider.client import QuoteProvider

logger = get_logger(__name__)

#: Provider interval names mapped to ccxt timeframe strings.
INTERVAL_TO_CCXT = {
    "1min": "1m",
    "5min": "5m",
    "15min": "15m",
    "30min": "30m",
    "1h": "1h",
    "1day": "1d",
}


def to_ccxt_timeframe(interval: str) -> str:
    """Translate an interval like "5min" to ccxt's "5m"; unknown values pass through."""
    return INTERVAL_TO_CCXT.get(interval, interval)


class CcxtQuoteProvider(QuoteProvider):
    """Concrete quote provider using a ccxt async exchange."""

    def __init__(self, settings: ProviderSettings) -> None:
        self._settings = settings

        config: dict = {
            "apiKey": settings.api_key.get_secret_value(),
            "secret": settings.api_secret.get_secret_value(),
            "enableRateLimit": True,
            "options": {
                "defaultType": settings.default_type,
            },
        }

        exchange_class = getattr(ccxt_async, settings.exchange_id)
        self._exchange = exchange_class(config)
        self._markets: dict = {}

    @property
    def exchange(self):  # type: ignore[no-untyped-def]
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        logger.info("connecting_to_provider", exchange=self._settings.exchange_id)
        self._markets = await self._exchange.load_markets()
        logger.info(
            "provider_connected",
            exchange=self._settings.exchange_id,
            market_count=len(self._markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("provider_connection_closed", exchange=self._settings.exchange_id)

    async def fetch_historical_data(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        interval: str = "5min",
        output_size: int = 72,
    ) -> HistoricalSeries | None:
        """Close prices of OHLCV candles in [start_ms, end_ms].

        Returns None on provider errors or when no usable candle came back.
        """
        try:
            candles = await self._exchange.fetch_ohlcv(
                symbol,
                timeframe=to_ccxt_timeframe(interval),
                since=start_ms,
                limit=output_size,
            )
        except Exception as e:
            logger.warning("history_fetch_failed", symbol=symbol, error=str(e))
            return None

        points: list[PricePoint] = []
        for candle in candles or []:
            if len(candle) < 5:
                continue
            timestamp_ms = parse_timestamp_ms(candle[0])
            if timestamp_ms is None or timestamp_ms < start_ms or timestamp_ms > end_ms:
                continue
            close = parse_decimal(candle[4])
            if close is None or close <= 0:
                continue
            points.append(PricePoint(timestamp_ms=timestamp_ms, price=close))

        if not points:
            logger.debug("history_empty", symbol=symbol)
            return None

        points.sort(key=lambda point: point.timestamp_ms)
        return HistoricalSeries(symbol=symbol, historical_data=points)

    async def fetch_batch_quotes(
        self, symbols: list[str], timeframe: Timeframe | str = Timeframe.DAILY
    ) -> list[Quote]:
        """Last traded price per symbol from a single fetch_tickers call."""
        if not symbols:
            return []
        try:
            tickers = await self._exchange.fetch_tickers(symbols)
        except Exception as e:
            logger.warning("batch_quotes_failed", symbols=symbols, error=str(e))
            return []

        quotes: list[Quote] = []
        for symbol in symbols:
            ticker = tickers.get(symbol)
            if not ticker:
                continue
            price = parse_decimal(ticker.get("last"))
            if price is None or price <= 0:
                continue
            quotes.append(
                Quote(
                    symbol=symbol,
                    price=price,
                    timestamp_ms=parse_timestamp_ms(ticker.get("timestamp")) or 0,
                )
            )

        logger.debug(
            "batch_quotes_fetched",
            requested=len(symbols),
            received=len(quotes),
            timeframe=Timeframe(timeframe).value,
        )
        return quotes

    def get_markets(self) -> dict:
        """Return cached markets dict loaded at connect() time."""
        return self._markets
