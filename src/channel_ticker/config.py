from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from channel_ticker.errors import MissingSetting

DEFAULT_API_BASE = "https://finance.khorami.dev/api"
DEFAULT_DISCORD_API_BASE = "https://discord.com/api/v10"
DEFAULT_UPDATE_INTERVAL_MS = 30_000
DEFAULT_CACHE_TTL_MS = 15_000
DEFAULT_MAX_BACKOFF = 5


@dataclass(slots=True)
class Settings:
    api_key: str
    discord_token: str
    api_base: str = DEFAULT_API_BASE
    api_bearer: Optional[str] = None
    update_interval_ms: int = DEFAULT_UPDATE_INTERVAL_MS
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    http_timeout_s: float = 8.0
    max_backoff_multiplier: int = DEFAULT_MAX_BACKOFF
    redis_url: str = "redis://localhost:6379/0"
    discord_api_base: str = DEFAULT_DISCORD_API_BASE


def _positive_int(raw: Optional[str], fallback: int) -> int:
    try:
        v = int(raw) if raw is not None else fallback
    except ValueError:
        return fallback
    return v if v > 0 else fallback


def _positive_float(raw: Optional[str], fallback: float) -> float:
    try:
        v = float(raw) if raw is not None else fallback
    except ValueError:
        return fallback
    return v if v > 0 else fallback


def settings_from_env() -> Settings:
    """
    Build Settings from the process environment (call load_dotenv() first).
    Raises MissingSetting when a credential is absent.
    """
    api_key = os.getenv("FINANCE_API_KEY")
    token = os.getenv("DISCORD_TOKEN") or os.getenv("CLIENT_TOKEN")
    if not api_key:
        raise MissingSetting("Missing FINANCE_API_KEY in environment.")
    if not token:
        raise MissingSetting("Missing DISCORD_TOKEN in environment (or legacy CLIENT_TOKEN).")

    return Settings(
        api_key=api_key,
        discord_token=token,
        api_base=os.getenv("FINANCE_API_BASE") or DEFAULT_API_BASE,
        api_bearer=os.getenv("FINANCE_API_BEARER") or None,
        update_interval_ms=_positive_int(os.getenv("UPDATE_INTERVAL_MS"), DEFAULT_UPDATE_INTERVAL_MS),
        cache_ttl_ms=_positive_int(os.getenv("QUOTE_CACHE_TTL_MS"), DEFAULT_CACHE_TTL_MS),
        http_timeout_s=_positive_float(os.getenv("HTTP_TIMEOUT_S"), 8.0),
        max_backoff_multiplier=_positive_int(os.getenv("TICKER_MAX_BACKOFF"), DEFAULT_MAX_BACKOFF),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        discord_api_base=os.getenv("DISCORD_API_BASE") or DEFAULT_DISCORD_API_BASE,
    )
