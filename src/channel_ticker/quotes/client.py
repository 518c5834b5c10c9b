from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote as urlquote

import aiohttp
import structlog

from channel_ticker.errors import EmptyPayload, SymbolNotFound, UpstreamUnavailable

log = structlog.get_logger("market_data")


@dataclass(slots=True)
class MarketDataConfig:
    api_base: str
    api_key: str
    api_bearer: Optional[str] = None
    timeout_s: float = 8.0


class MarketDataClient:
    """
    Thin async client for GET {base}/market-data/{symbol}?interval=...

    Returns the decoded JSON object; every failure is mapped onto the
    UpstreamError family so the resolver can pick a fallback policy:
      - 404                      -> SymbolNotFound
      - other non-2xx / network  -> UpstreamUnavailable
      - empty or non-object body -> EmptyPayload
    No retries here: the scheduler's backoff is the retry policy.
    """

    def __init__(self, cfg: MarketDataConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "MarketDataClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "X-API-Key": self.cfg.api_key}
        if self.cfg.api_bearer:
            headers["Authorization"] = f"Bearer {self.cfg.api_bearer}"
        return headers

    def url_for(self, symbol: str) -> str:
        return f"{self.cfg.api_base.rstrip('/')}/market-data/{urlquote(symbol, safe='')}"

    async def fetch(self, symbol: str, interval: Optional[str] = None) -> dict:
        if self._session is None:
            await self.start()
        assert self._session is not None

        params = {"interval": interval} if interval else None
        try:
            async with self._session.get(self.url_for(symbol), params=params, headers=self._headers()) as resp:
                if resp.status == 404:
                    raise SymbolNotFound(f"No market data found for {symbol}.", symbol=symbol, status=404)
                if resp.status < 200 or resp.status >= 300:
                    detail = await _maybe_text(resp)
                    log.warning("market_data_bad_status", symbol=symbol, status=resp.status, body=detail[:200])
                    raise UpstreamUnavailable(
                        f"Market data request failed with status {resp.status}",
                        symbol=symbol, status=resp.status,
                    )
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise EmptyPayload(f"Undecodable payload for {symbol}: {e}", symbol=symbol, status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("market_data_network_error", symbol=symbol, err=str(e) or type(e).__name__)
            raise UpstreamUnavailable(f"Market data request failed: {e!r}", symbol=symbol) from e

        if not isinstance(payload, dict) or not payload:
            raise EmptyPayload(f"Empty payload for {symbol}.", symbol=symbol, status=200)
        return payload


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"
