import json

import pytest
from redis.exceptions import WatchError

from storage.redis_config import ACTIVE_GROUPS_KEY, MAX_WATCH_RETRIES, RedisConfigStore, key


class _FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.cmds = []
        self.watched = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.cmds.clear()

    async def watch(self, *keys):
        self.watched.extend(keys)

    async def get(self, k):
        return self.redis.data.get(k)

    def multi(self):
        self.cmds.clear()

    def set(self, k, v):
        self.cmds.append(("SET", k, v))

    def sadd(self, k, member):
        self.cmds.append(("SADD", k, member))

    def srem(self, k, member):
        self.cmds.append(("SREM", k, member))

    async def execute(self):
        if self.redis.conflicts > 0:
            self.redis.conflicts -= 1
            raise WatchError("watched key changed")
        for op, k, v in self.cmds:
            if op == "SET":
                self.redis.data[k] = v.encode("utf-8")
            elif op == "SADD":
                self.redis.sets.setdefault(k, set()).add(v.encode("utf-8"))
            else:
                self.redis.sets.get(k, set()).discard(v.encode("utf-8"))
        self.redis.executed.append(list(self.cmds))


class _FakeRedis:
    """Byte-returning stand-in for redis.asyncio.Redis (decode_responses=False)."""

    def __init__(self):
        self.data = {}
        self.sets = {}
        self.conflicts = 0
        self.executed = []
        self.writes = 0

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def get(self, k):
        return self.data.get(k)

    async def set(self, k, v, nx=False):
        self.writes += 1
        if nx and k in self.data:
            return None
        self.data[k] = v.encode("utf-8")
        return True

    async def smembers(self, k):
        return set(self.sets.get(k, set()))


@pytest.mark.asyncio
async def test_get_or_create_writes_default_once():
    r = _FakeRedis()
    store = RedisConfigStore(r)
    cfg = await store.get_or_create("g1")
    assert cfg.tickers == []
    assert json.loads(r.data[key("g1")])["group_id"] == "g1"

    await store.upsert_ticker("g1", "c1", enabled=True)
    # existing document is not overwritten
    cfg = await store.get_or_create("g1")
    assert cfg.find_ticker("c1").enabled is True

@pytest.mark.asyncio
async def test_upsert_persists_json_and_active_set():
    r = _FakeRedis()
    store = RedisConfigStore(r)
    await store.upsert_ticker("g1", "c1", enabled=True, symbols=["ODANA:XAUUSD"], precision=2)

    doc = json.loads(r.data["ticker:group:g1"])
    assert doc["tickers"][0]["surface_id"] == "c1"
    assert doc["tickers"][0]["precision"] == 2
    assert await store.find_groups_with_active_tickers() == ["g1"]
    assert r.executed[-1][1] == ("SADD", ACTIVE_GROUPS_KEY, "g1")

@pytest.mark.asyncio
async def test_disable_removes_from_active_set():
    r = _FakeRedis()
    store = RedisConfigStore(r)
    await store.upsert_ticker("g1", "c1", enabled=True)
    await store.upsert_ticker("g2", "c2", enabled=True)
    assert await store.find_groups_with_active_tickers() == ["g1", "g2"]

    await store.disable_ticker("g1", "c1")
    assert await store.find_groups_with_active_tickers() == ["g2"]
    await store.disable_all("g2")
    assert await store.find_groups_with_active_tickers() == []
    assert (await store.get_or_create("g1")).find_ticker("c1").enabled is False

@pytest.mark.asyncio
async def test_group_settings_and_remove():
    r = _FakeRedis()
    store = RedisConfigStore(r)
    await store.upsert_ticker("g1", "c1", enabled=True)
    cfg = await store.update_group("g1", watchlist=["EURUSD"], default_interval="60")
    assert cfg.watchlist == ["EURUSD"]
    assert cfg.find_ticker("c1") is not None

    await store.remove_ticker("g1", "c1")
    cfg = await store.get_or_create("g1")
    assert cfg.tickers == []
    assert cfg.default_interval == "60"
    assert await store.find_groups_with_active_tickers() == []

@pytest.mark.asyncio
async def test_write_conflict_is_retried():
    r = _FakeRedis()
    r.conflicts = 2
    store = RedisConfigStore(r)
    cfg = await store.upsert_ticker("g1", "c1", enabled=True)
    assert cfg.find_ticker("c1").enabled is True
    assert len(r.executed) == 1

@pytest.mark.asyncio
async def test_gives_up_after_repeated_conflicts():
    r = _FakeRedis()
    r.conflicts = MAX_WATCH_RETRIES
    store = RedisConfigStore(r)
    with pytest.raises(WatchError):
        await store.upsert_ticker("g1", "c1", enabled=True)
    assert key("g1") not in r.data

@pytest.mark.asyncio
async def test_get_or_create_reads_without_writing_existing_document():
    r = _FakeRedis()
    store = RedisConfigStore(r)
    await store.get_or_create("g1")
    assert r.writes == 1
    for _ in range(3):
        await store.get_or_create("g1")
    assert r.writes == 1

    await store.upsert_ticker("g2", "c1", enabled=True)
    await store.get_or_create("g2")
    assert r.writes == 1
