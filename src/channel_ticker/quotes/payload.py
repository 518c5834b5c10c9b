from __future__ import annotations

import math
import re
from typing import Optional

from channel_ticker.utils.time import parse_timestamp_ms
from channel_ticker.utils.types import Candle, Quote, DEFAULT_QUOTE_INTERVAL

_WS = re.compile(r"\s+")

def normalize_symbol(symbol: Optional[str]) -> str:
    """'odana: xauusd ' -> 'ODANA:XAUUSD'"""
    if not symbol:
        return ""
    return _WS.sub("", symbol).upper()

def cache_key(symbol: str, interval: Optional[str]) -> str:
    return f"{normalize_symbol(symbol)}:{interval or 'default'}"

def _to_float(v) -> float:
    if v is None or isinstance(v, bool):
        return math.nan
    try:
        return float(v)
    except (TypeError, ValueError):
        return math.nan

def _parse_candle(c) -> Optional[Candle]:
    if not isinstance(c, dict):
        return None
    return Candle(
        open=_to_float(c.get("open")),
        high=_to_float(c.get("high")),
        low=_to_float(c.get("low")),
        close=_to_float(c.get("close")),
        time_ms=parse_timestamp_ms(c.get("time") if c.get("time") is not None else c.get("timestamp")),
    )

def _market_open(m: dict) -> bool:
    # closed only when upstream says so explicitly
    status = m.get("marketStatus")
    if isinstance(status, dict) and status.get("isOpen") is False:
        return False
    return True

def parse_quote(m: dict, symbol: str, interval: Optional[str]) -> Quote:
    """
    Normalize a market-data payload into a Quote.

    Expected fields (see GET {base}/market-data/{symbol}):
      - "price": 1234.5
      - "timestamp": 1700000000000 | "2024-02-01T14:32:01Z"
      - "candles": [{"open":..,"high":..,"low":..,"close":..,"time":..}, ...]
      - "indicators", "volatility": free-form objects
      - "marketStatus": {"isOpen": bool}

    Missing or malformed values are kept as NaN / None so the validator can
    flag them; nothing here raises on bad data.
    """
    raw_candles = m.get("candles")
    candles = tuple(
        c for c in (_parse_candle(x) for x in (raw_candles if isinstance(raw_candles, list) else []))
        if c is not None
    )
    indicators = m.get("indicators")
    volatility = m.get("volatility")

    return Quote(
        symbol=normalize_symbol(m.get("symbol") or symbol),
        interval=str(m.get("interval") or interval or DEFAULT_QUOTE_INTERVAL),
        price=_to_float(m.get("price")),
        timestamp_ms=parse_timestamp_ms(m.get("timestamp")),
        market_open=_market_open(m),
        candles=candles,
        indicators=dict(indicators) if isinstance(indicators, dict) else {},
        volatility=dict(volatility) if isinstance(volatility, dict) else {},
    )
