# src/storage/config_store.py
from __future__ import annotations

import asyncio
import copy
from dataclasses import asdict, fields
from typing import Any, Protocol

import structlog

from channel_ticker.errors import InvalidTickerConfig
from channel_ticker.utils.types import GroupConfig, TickerConfig

log = structlog.get_logger("config_store")

TICKER_FIELDS = frozenset(f.name for f in fields(TickerConfig)) - {"group_id", "surface_id"}


class ConfigStore(Protocol):
    """
    Persisted per-group ticker configuration. Every read returns a fresh
    object; the scheduler reloads before each tick.
    """

    async def get_or_create(self, group_id: str) -> GroupConfig: ...

    async def upsert_ticker(self, group_id: str, surface_id: str, **fields: Any) -> GroupConfig: ...

    async def disable_ticker(self, group_id: str, surface_id: str) -> GroupConfig: ...

    async def disable_all(self, group_id: str) -> GroupConfig: ...

    async def find_groups_with_active_tickers(self) -> list[str]: ...


# ---------------- schema helpers ---------------- #

def check_ticker_fields(updates: dict[str, Any]) -> None:
    unknown = set(updates) - TICKER_FIELDS
    if unknown:
        raise InvalidTickerConfig(f"Unknown ticker fields: {sorted(unknown)}")
    if "precision" in updates:
        p = updates["precision"]
        if not isinstance(p, int) or isinstance(p, bool) or not 1 <= p <= 6:
            raise InvalidTickerConfig("precision must be an integer between 1 and 6")
    if "poll_interval_ms" in updates:
        iv = updates["poll_interval_ms"]
        if not isinstance(iv, int) or isinstance(iv, bool) or iv <= 0:
            raise InvalidTickerConfig("poll_interval_ms must be a positive integer")
    if "template" in updates:
        tpl = updates["template"]
        if not isinstance(tpl, str) or "{PAIR}" not in tpl or "{PRICE}" not in tpl:
            raise InvalidTickerConfig("template must contain {PAIR} and {PRICE}")
    if "symbols" in updates and not isinstance(updates["symbols"], (list, tuple)):
        raise InvalidTickerConfig("symbols must be a list")


def apply_ticker_update(cfg: GroupConfig, surface_id: str, updates: dict[str, Any]) -> GroupConfig:
    check_ticker_fields(updates)
    ticker = cfg.find_ticker(surface_id)
    if ticker is None:
        ticker = TickerConfig(group_id=cfg.group_id, surface_id=surface_id)
        cfg.tickers.append(ticker)
    for k, v in updates.items():
        setattr(ticker, k, list(v) if k == "symbols" else v)
    return cfg


def group_to_dict(cfg: GroupConfig) -> dict:
    return asdict(cfg)


def _stored_ticker(gid: str, raw: dict) -> TickerConfig:
    """Rebuild a persisted ticker; unusable stored values fall back to the defaults."""
    t: dict[str, Any] = {}
    for k, v in raw.items():
        if k not in TICKER_FIELDS or v is None:
            continue
        try:
            check_ticker_fields({k: v})
        except InvalidTickerConfig:
            log.warning("config_field_defaulted", group_id=gid, surface_id=raw.get("surface_id"), field=k)
            continue
        t[k] = v
    t["enabled"] = t.get("enabled") is True
    if "symbols" in t:
        t["symbols"] = [str(s) for s in t["symbols"] if s]
    if not isinstance(t.get("original_name"), str):
        t.pop("original_name", None)
    return TickerConfig(group_id=gid, surface_id=str(raw["surface_id"]), **t)


def group_from_dict(data: dict) -> GroupConfig:
    gid = str(data["group_id"])
    tickers = []
    for raw in data.get("tickers") or []:
        if not isinstance(raw, dict) or not raw.get("surface_id"):
            continue
        tickers.append(_stored_ticker(gid, raw))
    cfg = GroupConfig(group_id=gid, tickers=tickers)
    if isinstance(data.get("watchlist"), list):
        cfg.watchlist = [str(s) for s in data["watchlist"]]
    if data.get("default_interval"):
        cfg.default_interval = str(data["default_interval"])
    if data.get("locale"):
        cfg.locale = str(data["locale"])
    return cfg


# ---------------- in-memory store ---------------- #

class InMemoryConfigStore:
    """Process-local store (tests, single-process runs without Redis)."""

    def __init__(self):
        self._groups: dict[str, GroupConfig] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, group_id: str) -> GroupConfig:
        async with self._lock:
            cfg = self._groups.setdefault(group_id, GroupConfig(group_id=group_id))
            return copy.deepcopy(cfg)

    async def upsert_ticker(self, group_id: str, surface_id: str, **fields: Any) -> GroupConfig:
        async with self._lock:
            cfg = self._groups.setdefault(group_id, GroupConfig(group_id=group_id))
            apply_ticker_update(cfg, surface_id, fields)
            return copy.deepcopy(cfg)

    async def update_group(self, group_id: str, **fields: Any) -> GroupConfig:
        """Group-level settings: watchlist, default_interval, locale."""
        async with self._lock:
            cfg = self._groups.setdefault(group_id, GroupConfig(group_id=group_id))
            for k in ("watchlist", "default_interval", "locale"):
                if k in fields:
                    setattr(cfg, k, fields[k])
            return copy.deepcopy(cfg)

    async def disable_ticker(self, group_id: str, surface_id: str) -> GroupConfig:
        return await self.upsert_ticker(group_id, surface_id, enabled=False)

    async def disable_all(self, group_id: str) -> GroupConfig:
        async with self._lock:
            cfg = self._groups.setdefault(group_id, GroupConfig(group_id=group_id))
            for t in cfg.tickers:
                t.enabled = False
            return copy.deepcopy(cfg)

    async def remove_ticker(self, group_id: str, surface_id: str) -> None:
        async with self._lock:
            cfg = self._groups.get(group_id)
            if cfg is not None:
                cfg.tickers = [t for t in cfg.tickers if t.surface_id != surface_id]

    async def find_groups_with_active_tickers(self) -> list[str]:
        async with self._lock:
            return [gid for gid, cfg in self._groups.items() if cfg.enabled_tickers()]
