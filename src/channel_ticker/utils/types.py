from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_TEMPLATE = "{PAIR}:{PRICE}"
DEFAULT_PRECISION = 3
DEFAULT_POLL_INTERVAL_MS = 30_000
DEFAULT_QUOTE_INTERVAL = "15"

# ---- quote-level primitives ----

@dataclass(frozen=True, slots=True)
class Candle:
    open: float
    high: float
    low: float
    close: float
    time_ms: Optional[int]  # None when upstream sent no parseable time

@dataclass(frozen=True, slots=True)
class Quote:
    """
    One resolved market-data snapshot. Treat as read-only: the resolver keeps
    deep copies of the mutable maps in its last-good record.
    """
    symbol: str
    interval: str
    price: float                 # NaN when upstream sent none
    timestamp_ms: Optional[int]  # None when unresolvable
    market_open: bool = True
    candles: tuple[Candle, ...] = ()
    indicators: dict = field(default_factory=dict)
    volatility: dict = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

# ---- configuration (owned by the config store) ----

@dataclass(slots=True)
class TickerConfig:
    group_id: str
    surface_id: str
    enabled: bool = False
    symbols: list[str] = field(default_factory=list)
    template: str = DEFAULT_TEMPLATE
    precision: int = DEFAULT_PRECISION
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    original_name: Optional[str] = None

@dataclass(slots=True)
class GroupConfig:
    group_id: str
    tickers: list[TickerConfig] = field(default_factory=list)
    watchlist: list[str] = field(default_factory=list)
    default_interval: str = DEFAULT_QUOTE_INTERVAL
    locale: str = "en"

    def find_ticker(self, surface_id: str) -> Optional[TickerConfig]:
        for t in self.tickers:
            if t.surface_id == surface_id:
                return t
        return None

    def enabled_tickers(self) -> list[TickerConfig]:
        return [t for t in self.tickers if t.enabled and t.surface_id]
