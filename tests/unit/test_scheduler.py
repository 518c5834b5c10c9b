import asyncio

import pytest

from channel_ticker.errors import QuoteUnavailable, RenameFailed
from channel_ticker.ticker.scheduler import TickerScheduler
from channel_ticker.ticker.state import TickResult
from channel_ticker.utils.types import Quote
from storage.config_store import InMemoryConfigStore
from tests.helpers.fakes import FakeRenamer, FakeResolver, SleepRecorder, wait_until

GOLD = Quote(symbol="ODANA:XAUUSD", interval="15", price=1234.5, timestamp_ms=1_700_000_000_000)
EURO_CLOSED = Quote(symbol="OANDA:EURUSD", interval="15", price=1.0912, timestamp_ms=1_700_000_000_000, market_open=False)


async def make_scheduler(*, symbols=("ODANA:XAUUSD",), base=1000, sleep_limit=0, renamer=None, resolver=None, **ticker):
    store = InMemoryConfigStore()
    await store.upsert_ticker(
        "g1", "c1", enabled=True, symbols=list(symbols), poll_interval_ms=base,
        precision=2, original_name="prices", **ticker,
    )
    renamer = renamer or FakeRenamer(names={"c1": "prices"})
    resolver = resolver or FakeResolver(quotes={"ODANA:XAUUSD": GOLD, "OANDA:EURUSD": EURO_CLOSED})
    sleep = SleepRecorder(limit=sleep_limit)
    sched = TickerScheduler(store, resolver, renamer, default_interval_ms=30_000, sleep=sleep)
    return sched, store, renamer, resolver, sleep


@pytest.mark.asyncio
async def test_first_tick_renames_then_waits_base_interval():
    sched, _, renamer, resolver, sleep = await make_scheduler(sleep_limit=1)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)

    assert sleep.delays == [0, 1.0]
    assert renamer.renames == [("c1", "XAUUSD:1234.50")]
    assert resolver.calls == [("ODANA:XAUUSD", "15")]
    st = sched.statuses("g1")["c1"]
    assert st.last_name == "XAUUSD:1234.50"
    assert st.last_updated_at is not None
    assert st.market_closed is False
    await sched.stop_all()

@pytest.mark.asyncio
async def test_zero_symbols_doubles_interval_without_rename():
    sched, _, renamer, _, sleep = await make_scheduler(symbols=(), sleep_limit=1)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)

    assert sleep.delays == [0, 2.0]
    assert renamer.renames == []
    # not a failure: backoff untouched
    assert await sched.tick("g1", "c1") == TickResult("no_symbols", 2000)
    await sched.stop_all()

@pytest.mark.asyncio
async def test_identical_names_rename_once():
    sched, _, renamer, _, sleep = await make_scheduler(sleep_limit=2)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 3)
    assert renamer.renames == [("c1", "XAUUSD:1234.50")]
    await sched.stop_all()

@pytest.mark.asyncio
async def test_last_applied_name_skips_even_if_platform_lags():
    sched, _, renamer, _, sleep = await make_scheduler()
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 1)  # parked before first tick

    first = await sched.tick("g1", "c1")
    assert first.kind == "renamed"
    renamer.names["c1"] = "prices"  # platform still reports the old name
    second = await sched.tick("g1", "c1")
    assert second == TickResult("unchanged", 1000, "XAUUSD:1234.50")
    assert len(renamer.renames) == 1
    await sched.stop_all()

@pytest.mark.asyncio
async def test_rename_failures_back_off_and_cap():
    renamer = FakeRenamer(names={"c1": "prices"}, fail_with=RenameFailed("429", status=429))
    sched, _, _, _, sleep = await make_scheduler(renamer=renamer, sleep_limit=3)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 4)

    assert sleep.delays == [0, 2.0, 4.0, 5.0]
    assert sched.statuses("g1")["c1"].last_name is None
    await sched.stop_all()

@pytest.mark.asyncio
async def test_success_resets_backoff():
    renamer = FakeRenamer(names={"c1": "prices"}, fail_with=RenameFailed("429"))
    sched, _, _, _, sleep = await make_scheduler(renamer=renamer)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 1)

    assert (await sched.tick("g1", "c1")).delay_ms == 2000
    assert (await sched.tick("g1", "c1")).delay_ms == 4000
    renamer.fail_with = None
    assert (await sched.tick("g1", "c1")) == TickResult("renamed", 1000, "XAUUSD:1234.50")
    renamer.fail_with = RenameFailed("429")
    renamer.names["c1"] = "changed by someone"
    sched._groups["g1"].surfaces["c1"].last_applied_name = None
    assert (await sched.tick("g1", "c1")).delay_ms == 2000
    await sched.stop_all()

@pytest.mark.asyncio
async def test_resolver_and_lookup_errors_back_off():
    resolver = FakeResolver(error=QuoteUnavailable("ODANA:XAUUSD:15", "live fetch failed"))
    sched, _, renamer, _, sleep = await make_scheduler(resolver=resolver)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 1)

    res = await sched.tick("g1", "c1")
    assert res.kind == "failed" and res.delay_ms == 2000
    resolver.error = None
    renamer.lookup_error = RuntimeError("gateway hiccup")
    res = await sched.tick("g1", "c1")
    assert res.kind == "failed" and res.delay_ms == 4000
    assert renamer.renames == []
    await sched.stop_all()

@pytest.mark.asyncio
async def test_market_closed_doubles_delay():
    sched, _, renamer, _, sleep = await make_scheduler(symbols=("OANDA:EURUSD",), sleep_limit=1)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)
    assert sleep.delays == [0, 2.0]
    assert renamer.renames == [("c1", "EURUSD:1.09")]
    assert sched.statuses("g1")["c1"].market_closed is True
    await sched.stop_all()

@pytest.mark.asyncio
async def test_one_open_quote_keeps_normal_cadence():
    sched, _, renamer, _, sleep = await make_scheduler(symbols=("OANDA:EURUSD", "ODANA:XAUUSD"), sleep_limit=1)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)
    assert sleep.delays == [0, 1.0]
    assert renamer.renames == [("c1", "EURUSD:1.09 | XAUUSD:1234.50")]
    await sched.stop_all()

@pytest.mark.asyncio
async def test_missing_surface_retries_at_base():
    sched, _, renamer, _, sleep = await make_scheduler(renamer=FakeRenamer(names={}))
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 1)
    assert await sched.tick("g1", "c1") == TickResult("missing", 1000)
    assert renamer.renames == []
    await sched.stop_all()

@pytest.mark.asyncio
async def test_disabled_config_goes_idle():
    sched, store, renamer, _, sleep = await make_scheduler(sleep_limit=1)
    await store.disable_ticker("g1", "c1")
    await sched.start("g1")
    assert sched.tracked("g1") == []

    await store.upsert_ticker("g1", "c1", enabled=True)
    await sched.start("g1")
    task = sched._groups["g1"].surfaces["c1"].task
    await store.disable_ticker("g1", "c1")
    # the immediate tick reloads config, sees it disabled and exits
    await asyncio.wait_for(task, timeout=2.0)
    assert sched.tracked("g1") == []
    assert renamer.renames == []

@pytest.mark.asyncio
async def test_watchlist_and_group_interval_are_used():
    sched, store, _, resolver, sleep = await make_scheduler(symbols=(), sleep_limit=1)
    await store.update_group("g1", watchlist=["odana:xauusd"], default_interval="60")
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)
    assert resolver.calls == [("ODANA:XAUUSD", "60")]
    await sched.stop_all()

@pytest.mark.asyncio
async def test_start_drops_surfaces_no_longer_enabled():
    sched, store, _, _, sleep = await make_scheduler()
    await store.upsert_ticker("g1", "c2", enabled=True, symbols=["ODANA:XAUUSD"], poll_interval_ms=1000)
    await sched.start("g1")
    assert sorted(sched.tracked("g1")) == ["c1", "c2"]

    task = sched._groups["g1"].surfaces["c2"].task
    await store.disable_ticker("g1", "c2")
    await sched.refresh("g1")
    assert sched.tracked("g1") == ["c1"]
    with pytest.raises(asyncio.CancelledError):
        await task
    await sched.stop_all()

@pytest.mark.asyncio
async def test_stop_cancels_pending_and_restores_name():
    sched, store, renamer, _, sleep = await make_scheduler(sleep_limit=1)
    await sched.start("g1")
    await wait_until(lambda: len(sleep.delays) == 2)
    task = sched._groups["g1"].surfaces["c1"].task

    await store.disable_ticker("g1", "c1")
    await sched.stop("g1", restore_name=True)
    assert sched.tracked("g1") == []
    assert sched.statuses("g1") == {}
    with pytest.raises(asyncio.CancelledError):
        await task
    assert renamer.renames == [("c1", "XAUUSD:1234.50"), ("c1", "prices")]

@pytest.mark.asyncio
async def test_restore_failure_is_not_fatal():
    sched, _, renamer, _, sleep = await make_scheduler()
    await sched.start("g1")
    renamer.names["c1"] = "XAUUSD:1234.50"
    renamer.fail_with = RenameFailed("403", status=403)
    await sched.stop("g1", "c1", restore_name=True)
    assert sched.tracked("g1") == []

@pytest.mark.asyncio
async def test_stop_during_running_tick_skips_rename():
    gate = asyncio.Event()
    entered = asyncio.Event()

    class SlowResolver(FakeResolver):
        async def resolve(self, symbol, interval=None):
            entered.set()
            await gate.wait()
            return await super().resolve(symbol, interval)

    resolver = SlowResolver(quotes={"ODANA:XAUUSD": GOLD})
    sched, _, renamer, _, sleep = await make_scheduler(resolver=resolver, sleep_limit=5)
    await sched.start("g1")
    await asyncio.wait_for(entered.wait(), timeout=2.0)
    task = sched._groups["g1"].surfaces["c1"].task

    await sched.stop("g1", "c1")
    assert not task.done()  # running tick is allowed to finish
    gate.set()
    await asyncio.wait_for(task, timeout=2.0)
    assert renamer.renames == []

@pytest.mark.asyncio
async def test_bootstrap_starts_active_groups():
    sched, store, _, _, sleep = await make_scheduler()
    await store.upsert_ticker("g2", "c9", enabled=True, symbols=["ODANA:XAUUSD"])
    await store.upsert_ticker("g3", "c7", enabled=False)
    assert await sched.bootstrap() == 2
    assert sched.tracked("g1") == ["c1"]
    assert sched.tracked("g2") == ["c9"]
    assert sched.tracked("g3") == []
    await sched.stop_all()
    assert sched.tracked("g1") == [] and sched.tracked("g2") == []
