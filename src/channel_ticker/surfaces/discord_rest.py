from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from channel_ticker.errors import RenameFailed, SurfaceNotFound
from channel_ticker.utils.backoff import jitter, next_backoff

log = structlog.get_logger("discord_rest")

# --------- small rate limiter (token bucket) ----------

class RateLimiter:
    def __init__(self, rate_per_sec: float, burst: int = 1):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self.updated: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            if self.updated is None:
                self.updated = now
            # refill
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            if self.tokens < 1.0:
                needed = 1.0 - self.tokens
                await asyncio.sleep(needed / self.rate)
                self.updated = loop.time()
                self.tokens = 1.0
            self.tokens -= 1.0

# --------- config & client ----------

@dataclass(slots=True)
class DiscordRenamerConfig:
    bot_token: str
    api_base: str = "https://discord.com/api/v10"
    timeout_s: float = 8.0
    per_surface_rate_per_sec: float = 1.0
    per_surface_burst: int = 3
    max_retries: int = 3
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0
    # longer rate-limit waits are left to the scheduler's backoff
    max_retry_after_s: float = 5.0

class DiscordChannelRenamer:
    """
    Reads and renames guild channels through the Discord REST API.

    Channel renames are heavily rate limited on Discord's side; short 429
    waits are honoured inline, longer ones surface as RenameFailed so the
    ticker backs off instead of holding its task.
    """
    def __init__(self, cfg: DiscordRenamerConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._limiters: dict[str, RateLimiter] = {}

    async def start(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _limiter(self, surface_id: str) -> RateLimiter:
        # one bucket per channel; surfaces never queue behind each other
        rl = self._limiters.get(surface_id)
        if rl is None:
            rl = RateLimiter(rate_per_sec=self.cfg.per_surface_rate_per_sec, burst=self.cfg.per_surface_burst)
            self._limiters[surface_id] = rl
        return rl

    def _url(self, surface_id: str) -> str:
        return f"{self.cfg.api_base.rstrip('/')}/channels/{surface_id}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bot {self.cfg.bot_token}",
            "X-Audit-Log-Reason": "price ticker update",
        }

    async def current_name(self, surface_id: str) -> Optional[str]:
        try:
            data = await self._request("GET", surface_id)
        except SurfaceNotFound:
            return None
        name = data.get("name") if isinstance(data, dict) else None
        return name if isinstance(name, str) else None

    async def rename(self, surface_id: str, name: str) -> None:
        await self._request("PATCH", surface_id, json={"name": name})
        log.info("channel_renamed", surface_id=surface_id, name=name)

    async def _request(self, method: str, surface_id: str, json: Optional[dict] = None) -> dict:
        if self._session is None:
            await self.start()
        assert self._session is not None

        backoff = self.cfg.initial_backoff_s
        last_status: Optional[int] = None
        for attempt in range(1, self.cfg.max_retries + 1):
            await self._limiter(surface_id).acquire()
            try:
                async with self._session.request(method, self._url(surface_id), json=json, headers=self._headers()) as resp:
                    last_status = resp.status
                    if 200 <= resp.status < 300:
                        return await _maybe_json(resp)
                    if resp.status == 404:
                        raise SurfaceNotFound(f"Channel {surface_id} not found.", surface_id=surface_id, status=404)

                    detail = await _maybe_json(resp)
                    log.warning("discord_request_failed", method=method, surface_id=surface_id,
                                status=resp.status, body=str(detail)[:200], attempt=attempt)
                    if resp.status == 429:
                        retry_after = _retry_after(detail, resp)
                        if retry_after is None or retry_after > self.cfg.max_retry_after_s:
                            raise RenameFailed(
                                f"Rate limited on channel {surface_id} (retry_after={retry_after})",
                                surface_id=surface_id, status=429,
                            )
                        await asyncio.sleep(retry_after)
                        continue
                    if 500 <= resp.status < 600:
                        await asyncio.sleep(jitter(backoff))
                        backoff = next_backoff(backoff, self.cfg.max_backoff_s)
                        continue
                    # other 4xx: don't retry
                    raise RenameFailed(
                        f"{method} channel {surface_id} failed with status {resp.status}",
                        surface_id=surface_id, status=resp.status,
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("discord_network_error", method=method, surface_id=surface_id, err=str(e), attempt=attempt)
                await asyncio.sleep(jitter(backoff))
                backoff = next_backoff(backoff, self.cfg.max_backoff_s)
        raise RenameFailed(
            f"{method} channel {surface_id} gave up after {self.cfg.max_retries} attempts",
            surface_id=surface_id, status=last_status,
        )

def _retry_after(detail, resp: aiohttp.ClientResponse) -> Optional[float]:
    raw = detail.get("retry_after") if isinstance(detail, dict) else None
    if raw is None:
        raw = resp.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None

async def _maybe_json(resp: aiohttp.ClientResponse):
    try:
        return await resp.json(content_type=None)
    except Exception:
        return {}
