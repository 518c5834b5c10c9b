from __future__ import annotations

import math
from typing import Iterable, Optional

import numpy as np

from channel_ticker.utils.time import minutes_between, utc_now_ms
from channel_ticker.utils.types import Quote

MIN_CANDLES = 26                 # enough history for a 26-period slow EMA
STALE_AFTER_MS = 90 * 60_000     # informational only
FRESH_WITHIN_MS = 15 * 60_000    # "closed" with data younger than this is suspicious
CANDLE_SKEW_MS = 5 * 60_000

PRICE_INVALID = "price invalid"
TIMESTAMP_INVALID = "timestamp invalid"
INSUFFICIENT_CANDLES = "insufficient candle data"
CANDLES_OUT_OF_ORDER = "candles out of order"
INVALID_OHLC = "invalid OHLC"
CANDLE_MISSING_TIMESTAMP = "candle missing timestamp"
CLOSED_BUT_FRESH = "market reported closed but data is fresh"

CRITICAL_WARNINGS = frozenset({
    PRICE_INVALID,
    TIMESTAMP_INVALID,
    INSUFFICIENT_CANDLES,
    CANDLES_OUT_OF_ORDER,
    INVALID_OHLC,
})


def is_critical(warning: str) -> bool:
    return warning in CRITICAL_WARNINGS


def has_critical(warnings: Iterable[str]) -> bool:
    return any(w in CRITICAL_WARNINGS for w in warnings)


def _price_ok(price: float) -> bool:
    return isinstance(price, (int, float)) and math.isfinite(price) and price > 0


def is_healthy(quote: Quote) -> bool:
    """Finite positive price, resolvable timestamp and enough candle history."""
    return _price_ok(quote.price) and quote.timestamp_ms is not None and len(quote.candles) >= MIN_CANDLES


def validate_quote(quote: Quote, now_ms: Optional[int] = None) -> list[str]:
    """
    Data-quality checks for a freshly fetched quote. Pure: returns warnings,
    never raises. Critical ones (CRITICAL_WARNINGS) make the resolver merge
    with the last-good quote; the rest are informational.
    """
    now = utc_now_ms() if now_ms is None else now_ms
    warnings: list[str] = []

    if not _price_ok(quote.price):
        warnings.append(PRICE_INVALID)

    age_ms: Optional[int] = None
    if quote.timestamp_ms is None:
        warnings.append(TIMESTAMP_INVALID)
    else:
        age_ms = now - quote.timestamp_ms
        if age_ms > STALE_AFTER_MS:
            warnings.append(f"quote is {int(minutes_between(now, quote.timestamp_ms))} minutes old")

    candles = quote.candles
    if len(candles) < MIN_CANDLES:
        warnings.append(INSUFFICIENT_CANDLES)
    else:
        times = np.array([c.time_ms for c in candles if c.time_ms is not None], dtype=np.int64)
        if times.size < len(candles):
            warnings.append(CANDLE_MISSING_TIMESTAMP)
        # newest first: each time <= the one before it
        if times.size > 1 and bool(np.any(np.diff(times) > 0)):
            warnings.append(CANDLES_OUT_OF_ORDER)

        ohlc = np.array([(c.open, c.high, c.low, c.close) for c in candles], dtype=float)
        if not (np.isfinite(ohlc).all() and (ohlc > 0).all()):
            warnings.append(INVALID_OHLC)

        if times.size and quote.timestamp_ms is not None:
            latest = int(times.max())
            if abs(latest - quote.timestamp_ms) > CANDLE_SKEW_MS:
                skew_min = int(minutes_between(latest, quote.timestamp_ms))
                warnings.append(f"latest candle is {skew_min} minutes from quote timestamp")

    if not quote.market_open and age_ms is not None and age_ms < FRESH_WITHIN_MS:
        warnings.append(CLOSED_BUT_FRESH)

    return warnings
