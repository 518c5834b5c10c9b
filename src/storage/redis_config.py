# src/storage/redis_config.py
from __future__ import annotations

import json
from typing import Any, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from channel_ticker.utils.types import GroupConfig
from storage.config_store import apply_ticker_update, group_from_dict, group_to_dict

log = structlog.get_logger("config_store")

ACTIVE_GROUPS_KEY = "ticker:active-groups"
MAX_WATCH_RETRIES = 5

def key(group_id: str) -> str:
    # ticker:group:{GROUP}
    return f"ticker:group:{group_id}"


class RedisConfigStore:
    """
    One JSON document per group plus a set of groups that currently have at
    least one enabled ticker (so startup does not scan every group).

    Writes are read-modify-write under WATCH so two concurrent updates to the
    same group cannot lose each other's fields.
    """

    def __init__(self, r: Redis):
        self.r = r

    async def _load(self, group_id: str) -> Optional[GroupConfig]:
        raw = await self.r.get(key(group_id))
        return _decode(raw) if raw is not None else None

    async def _save(self, pipe, cfg: GroupConfig) -> None:
        pipe.multi()
        pipe.set(key(cfg.group_id), json.dumps(group_to_dict(cfg)))
        if cfg.enabled_tickers():
            pipe.sadd(ACTIVE_GROUPS_KEY, cfg.group_id)
        else:
            pipe.srem(ACTIVE_GROUPS_KEY, cfg.group_id)
        await pipe.execute()

    async def _mutate(self, group_id: str, fn) -> GroupConfig:
        for _ in range(MAX_WATCH_RETRIES):
            async with self.r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key(group_id))
                    raw = await pipe.get(key(group_id))
                    cfg = _decode(raw) if raw is not None else GroupConfig(group_id=group_id)
                    fn(cfg)
                    await self._save(pipe, cfg)
                    return cfg
                except WatchError:
                    log.info("config_write_conflict_retry", group_id=group_id)
                    continue
        raise WatchError(f"Gave up updating group {group_id} after {MAX_WATCH_RETRIES} conflicts")

    async def get_or_create(self, group_id: str) -> GroupConfig:
        cfg = await self._load(group_id)
        if cfg is not None:
            return cfg
        cfg = GroupConfig(group_id=group_id)
        # NX: a concurrent writer may have created it first
        if not await self.r.set(key(group_id), json.dumps(group_to_dict(cfg)), nx=True):
            return await self._load(group_id) or cfg
        return cfg

    async def upsert_ticker(self, group_id: str, surface_id: str, **fields: Any) -> GroupConfig:
        return await self._mutate(group_id, lambda cfg: apply_ticker_update(cfg, surface_id, fields))

    async def disable_ticker(self, group_id: str, surface_id: str) -> GroupConfig:
        return await self.upsert_ticker(group_id, surface_id, enabled=False)

    async def disable_all(self, group_id: str) -> GroupConfig:
        def _off(cfg: GroupConfig) -> None:
            for t in cfg.tickers:
                t.enabled = False
        return await self._mutate(group_id, _off)

    async def update_group(self, group_id: str, **fields: Any) -> GroupConfig:
        def _set(cfg: GroupConfig) -> None:
            for k in ("watchlist", "default_interval", "locale"):
                if k in fields:
                    setattr(cfg, k, fields[k])
        return await self._mutate(group_id, _set)

    async def remove_ticker(self, group_id: str, surface_id: str) -> None:
        def _drop(cfg: GroupConfig) -> None:
            cfg.tickers = [t for t in cfg.tickers if t.surface_id != surface_id]
        await self._mutate(group_id, _drop)

    async def find_groups_with_active_tickers(self) -> list[str]:
        members = await self.r.smembers(ACTIVE_GROUPS_KEY)
        out = [m.decode("utf-8") if isinstance(m, bytes) else str(m) for m in members]
        return sorted(out)


def _decode(raw) -> GroupConfig:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return group_from_dict(json.loads(raw))
