"""Normalization boundary between stored/host documents and typed records.

Everything read from the store or handed over by the host goes through
``normalize_instrument`` so the rest of the package only ever sees
``Instrument`` values with Decimal prices, int millisecond timestamps and a
de-duplicated, ascending history.

Documents use snake_case keys. The camelCase keys written by older hosts
(``buyPrice``, ``buyDate``, ``historicalData``, ``addedAt``,
``currentPrice``) are accepted on read.

CRITICAL: Decimal values are stored as strings, restored as Decimal on read.
"""

import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from navsync.logging import get_logger
from navsync.models import (
    BuyDateMetadata,
    HistoricalSeries,
    Instrument,
    PricePoint,
    Watchlist,
)

logger = get_logger(__name__)

DEFAULT_MAX_HISTORY_POINTS = 100
UNKNOWN_SYMBOL = "UNKNOWN"

_ALIASES = {
    "buy_price": "buyPrice",
    "buy_date_ms": "buyDate",
    "historical_data": "historicalData",
    "added_at_ms": "addedAt",
    "current_price": "currentPrice",
    "buy_date_metadata": "buyDateMetadata",
    "timestamp_ms": "timestamp",
}


def _get(raw: Mapping[str, Any], key: str) -> Any:
    if key in raw:
        return raw[key]
    alias = _ALIASES.get(key)
    return raw.get(alias) if alias else None


def parse_decimal(value: Any) -> Decimal | None:
    """Decimal from str/int/float/Decimal, None if missing or not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def parse_timestamp_ms(value: Any) -> int | None:
    """Unix ms from an int/float ms value or an ISO-8601 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, int):
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def _normalize_history(raw_history: Any, symbol: str) -> tuple[list[PricePoint], bool]:
    """Returns (points, saw_zero_price). Malformed entries are dropped."""
    if not isinstance(raw_history, list):
        return [], False

    points: list[PricePoint] = []
    saw_zero = False
    for entry in raw_history:
        if isinstance(entry, PricePoint):
            points.append(entry)
            saw_zero = saw_zero or entry.price == 0
            continue
        if not isinstance(entry, Mapping):
            logger.warning("malformed_history_entry", symbol=symbol, entry=repr(entry))
            continue
        timestamp_ms = parse_timestamp_ms(_get(entry, "timestamp_ms"))
        price = parse_decimal(entry.get("price"))
        if timestamp_ms is None or price is None:
            logger.warning("malformed_history_entry", symbol=symbol, entry=repr(entry))
            continue
        if price == 0:
            saw_zero = True
        points.append(PricePoint(timestamp_ms=timestamp_ms, price=price))

    return merge_price_history([], points, max_points=None), saw_zero


def normalize_instrument(raw: Any, now_ms: int | None = None) -> Instrument:
    """Coerce a stored or host-supplied record into an ``Instrument``.

    Never raises. Invalid buy prices become 0 and flag the record
    ``incomplete``; so do zero prices in the history.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    if isinstance(raw, Instrument):
        return raw
    if not isinstance(raw, Mapping):
        logger.warning("invalid_instrument_record", raw=repr(raw))
        return Instrument(
            symbol=UNKNOWN_SYMBOL,
            buy_price=Decimal("0"),
            buy_date_ms=now_ms,
            added_at_ms=now_ms,
            incomplete=True,
        )

    symbol = str(raw.get("symbol") or UNKNOWN_SYMBOL).upper()
    incomplete = False

    history, saw_zero = _normalize_history(_get(raw, "historical_data"), symbol)
    if saw_zero:
        logger.warning("history_contains_zero_price", symbol=symbol)
        incomplete = True

    buy_price = parse_decimal(_get(raw, "buy_price"))
    if buy_price is None:
        logger.warning("invalid_buy_price", symbol=symbol, raw=repr(_get(raw, "buy_price")))
        buy_price = Decimal("0")
        incomplete = True

    added_at_ms = parse_timestamp_ms(_get(raw, "added_at_ms")) or now_ms

    buy_date_ms = parse_timestamp_ms(_get(raw, "buy_date_ms"))
    if buy_date_ms is None:
        logger.warning("missing_buy_date", symbol=symbol, fallback_ms=added_at_ms)
        buy_date_ms = added_at_ms

    current_price = parse_decimal(_get(raw, "current_price"))

    metadata = None
    raw_metadata = _get(raw, "buy_date_metadata")
    if isinstance(raw_metadata, Mapping):
        metadata = BuyDateMetadata(
            original_buy_date_ms=parse_timestamp_ms(
                raw_metadata.get("original_buy_date_ms", raw_metadata.get("originalBuyDate"))
            ),
            original_buy_price=parse_decimal(
                raw_metadata.get("original_buy_price", raw_metadata.get("originalBuyPrice"))
            ),
        )

    return Instrument(
        symbol=symbol,
        buy_price=buy_price,
        buy_date_ms=buy_date_ms,
        current_price=current_price,
        historical_data=history,
        added_at_ms=added_at_ms,
        buy_date_metadata=metadata,
        incomplete=incomplete or bool(raw.get("incomplete", False)),
    )


def merge_price_history(
    existing: Iterable[PricePoint],
    new: Iterable[PricePoint],
    max_points: int | None = DEFAULT_MAX_HISTORY_POINTS,
) -> list[PricePoint]:
    """Union of two histories keyed by timestamp, newer values win.

    Sorted ascending and trimmed to the ``max_points`` most recent entries.
    Merging the same data twice gives the same result.
    """
    by_timestamp: dict[int, PricePoint] = {}
    for point in existing:
        by_timestamp[point.timestamp_ms] = point
    for point in new:
        by_timestamp[point.timestamp_ms] = point

    merged = sorted(by_timestamp.values(), key=lambda point: point.timestamp_ms)
    if max_points is not None and len(merged) > max_points:
        merged = merged[-max_points:]
    return merged


def apply_price_update(
    instrument: Instrument,
    series: HistoricalSeries,
    max_points: int = DEFAULT_MAX_HISTORY_POINTS,
) -> Instrument:
    """Merge fetched history into an instrument.

    Only ``historical_data`` and ``current_price`` change; buy price and buy
    date are the user's and are carried over untouched.
    """
    fetched = [point for point in series.historical_data if point.price > 0]
    if not fetched:
        return instrument

    newest = max(fetched, key=lambda point: point.timestamp_ms)
    return replace(
        instrument,
        historical_data=merge_price_history(instrument.historical_data, fetched, max_points),
        current_price=newest.price,
    )


# ──────────────────────────────────────────────
# Document (de)serialization
# ──────────────────────────────────────────────


def _decimal_to_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def instrument_to_document(instrument: Instrument) -> dict[str, Any]:
    document: dict[str, Any] = {
        "symbol": instrument.symbol,
        "buy_price": _decimal_to_str(instrument.buy_price),
        "buy_date_ms": instrument.buy_date_ms,
        "current_price": _decimal_to_str(instrument.current_price),
        "historical_data": [
            {"timestamp_ms": point.timestamp_ms, "price": str(point.price)}
            for point in instrument.historical_data
        ],
        "added_at_ms": instrument.added_at_ms,
        "incomplete": instrument.incomplete,
    }
    if instrument.buy_date_metadata is not None:
        document["buy_date_metadata"] = {
            "original_buy_date_ms": instrument.buy_date_metadata.original_buy_date_ms,
            "original_buy_price": _decimal_to_str(
                instrument.buy_date_metadata.original_buy_price
            ),
        }
    return document


def watchlist_to_document(watchlist: Watchlist) -> dict[str, Any]:
    return {
        "id": watchlist.id,
        "slug": watchlist.slug,
        "name": watchlist.name,
        "items": [instrument_to_document(item) for item in watchlist.items],
    }


def watchlist_from_document(document: Mapping[str, Any]) -> Watchlist:
    """Build a typed Watchlist, normalizing every item."""
    raw_items = document.get("items") or []
    return Watchlist(
        id=str(document["id"]),
        slug=str(document["slug"]),
        name=str(document.get("name") or document["slug"]),
        items=[normalize_instrument(item) for item in raw_items],
    )
