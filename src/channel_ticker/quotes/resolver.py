from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import structlog

from channel_ticker.errors import QuoteUnavailable, UpstreamError
from channel_ticker.quotes.cache import InFlightCoordinator, QuoteCache
from channel_ticker.quotes.dedup import TTLDeduper
from channel_ticker.quotes.payload import cache_key, normalize_symbol, parse_quote
from channel_ticker.quotes.validator import MIN_CANDLES, has_critical, is_healthy, validate_quote
from channel_ticker.utils.types import Quote, DEFAULT_QUOTE_INTERVAL

log = structlog.get_logger("quotes")

MERGED_WARNING = "incoming data incomplete; merged with cached data"
WARNING_LOG_TTL_S = 300


class QuoteSource(Protocol):
    async def fetch(self, symbol: str, interval: Optional[str] = None) -> dict: ...


# ---- tagged outcomes ----

@dataclass(frozen=True, slots=True)
class Resolved:
    quote: Quote

@dataclass(frozen=True, slots=True)
class FallbackUsed:
    quote: Quote
    reason: str

@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    error: Optional[Exception] = None

QuoteOutcome = Union[Resolved, FallbackUsed, Failed]


def merge_with_fallback(incoming: Quote, fallback: Quote) -> Quote:
    """
    Blend a defective incoming quote with the last-good one:
      - price / timestamp from incoming when usable, else fallback
      - candles from incoming only if it carries a full history
      - indicator / volatility maps shallow-merged, incoming wins
    The merged-data warning is always appended.
    """
    price_ok = math.isfinite(incoming.price) and incoming.price > 0
    return dataclasses.replace(
        incoming,
        price=incoming.price if price_ok else fallback.price,
        timestamp_ms=incoming.timestamp_ms if incoming.timestamp_ms is not None else fallback.timestamp_ms,
        candles=incoming.candles if len(incoming.candles) >= MIN_CANDLES else fallback.candles,
        indicators={**fallback.indicators, **incoming.indicators},
        volatility={**fallback.volatility, **incoming.volatility},
        warnings=(*incoming.warnings, MERGED_WARNING),
    )


class QuoteResolver:
    """
    cache -> in-flight -> upstream, with last-good fallback.

    The cache and in-flight registry are injected so several resolvers (or
    tests) never share hidden module state.
    """

    def __init__(
        self,
        source: QuoteSource,
        *,
        cache: Optional[QuoteCache] = None,
        inflight: Optional[InFlightCoordinator] = None,
        warning_log: Optional[TTLDeduper] = None,
        default_interval: str = DEFAULT_QUOTE_INTERVAL,
    ):
        self.source = source
        self.cache = cache if cache is not None else QuoteCache()
        self.inflight = inflight if inflight is not None else InFlightCoordinator()
        self._warning_log = warning_log if warning_log is not None else TTLDeduper(ttl_s=WARNING_LOG_TTL_S)
        self.default_interval = default_interval

    async def resolve(self, symbol: str, interval: Optional[str] = None) -> Quote:
        outcome = await self.resolve_outcome(symbol, interval)
        if isinstance(outcome, Failed):
            raise QuoteUnavailable(cache_key(symbol, interval or self.default_interval), outcome.reason, outcome.error)
        return outcome.quote

    async def resolve_outcome(self, symbol: str, interval: Optional[str] = None) -> QuoteOutcome:
        sym = normalize_symbol(symbol)
        if not sym:
            return Failed("missing symbol")
        interval = interval or self.default_interval
        key = cache_key(sym, interval)

        cached = self.cache.get(key)
        if cached is not None:
            return Resolved(cached)

        return await self.inflight.run(key, lambda: self._fetch(key, sym, interval))

    # ---------- internals ----------

    async def _fetch(self, key: str, symbol: str, interval: str) -> QuoteOutcome:
        try:
            payload = await self.source.fetch(symbol, interval)
        except UpstreamError as e:
            return self._fallback(key, e)

        incoming = parse_quote(payload, symbol, interval)
        warnings = validate_quote(incoming)
        incoming = dataclasses.replace(incoming, warnings=tuple(warnings))

        fallback = self.cache.last_good(key)
        if has_critical(warnings) and fallback is not None:
            result = merge_with_fallback(incoming, fallback)
        else:
            result = incoming
        self._log_warnings(key, result.warnings)

        if is_healthy(result) and not has_critical(result.warnings):
            self.cache.remember_good(key, result)
        self.cache.put(key, result)
        return Resolved(result)

    def _fallback(self, key: str, err: UpstreamError) -> QuoteOutcome:
        fallback = self.cache.last_good(key)
        if fallback is None:
            log.warning("quote_fetch_failed", key=key, err=str(err), status=err.status)
            return Failed(err.reason, err)

        reason = f"{err.reason}; showing cached data"
        quote = dataclasses.replace(fallback, warnings=(reason,))
        self.cache.put(key, quote)
        if self._warning_log.first_sighting(f"{key}:{reason}"):
            log.warning("quote_fallback_used", key=key, reason=reason, err=str(err))
        return FallbackUsed(quote, reason)

    def _log_warnings(self, key: str, warnings: tuple[str, ...]) -> None:
        for w in warnings:
            if self._warning_log.first_sighting(f"{key}:{w}"):
                log.warning("quote_data_warning", key=key, warning=w)
