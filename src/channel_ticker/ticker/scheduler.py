from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from channel_ticker.quotes.payload import normalize_symbol
from channel_ticker.surfaces.base import SurfaceRenamer
from channel_ticker.ticker.formatting import format_ticker_name
from channel_ticker.ticker.state import GroupState, RuntimeState, TickResult, TickerStatus
from channel_ticker.utils.backoff import backoff_cap, next_backoff
from channel_ticker.utils.time import ms_until, utc_now_ms
from channel_ticker.utils.types import Quote, TickerConfig
from storage.config_store import ConfigStore

DEFAULT_MAX_BACKOFF = 5


class QuoteLookup(Protocol):
    async def resolve(self, symbol: str, interval: Optional[str] = None) -> Quote: ...


class TickerScheduler:
    """
    Keeps every enabled ticker's surface name in step with its quotes.

    One asyncio task per (group, surface), looping sleep -> tick. Ticks of a
    surface never overlap; surfaces never share state. The loop only ever
    sees a TickResult: every error inside a tick becomes backoff.

    Lifecycle:
      - start(group) / refresh(group): track newly enabled tickers (first
        tick immediately), drop ones no longer enabled
      - stop(group[, surface], restore_name=...): cancel sleeping tasks; a
        running tick finishes but skips its rename
    """

    def __init__(
        self,
        store: ConfigStore,
        resolver: QuoteLookup,
        renamer: SurfaceRenamer,
        *,
        default_interval_ms: int = 30_000,
        max_backoff_multiplier: float = DEFAULT_MAX_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = utc_now_ms,
    ):
        self.store = store
        self.resolver = resolver
        self.renamer = renamer
        self.default_interval_ms = default_interval_ms
        self.max_backoff_multiplier = max_backoff_multiplier
        self._sleep = sleep
        self._clock = clock
        self._groups: dict[str, GroupState] = {}
        self._log = structlog.get_logger("ticker")

    # ---------------------------- public API ---------------------------- #

    async def start(self, group_id: str) -> None:
        cfg = await self.store.get_or_create(group_id)
        enabled = cfg.enabled_tickers()
        if not enabled:
            await self.stop(group_id)
            return

        active = {t.surface_id for t in enabled}
        gs = self._groups.get(group_id)
        if gs is not None:
            for sid in list(gs.surfaces):
                if sid not in active:
                    self._stop_surface(group_id, sid)

        gs = self._groups.setdefault(group_id, GroupState())
        for ticker in enabled:
            if ticker.surface_id not in gs.surfaces:
                self._start_surface(group_id, gs, ticker)

    async def refresh(self, group_id: str) -> None:
        await self.start(group_id)

    async def stop(self, group_id: str, surface_id: Optional[str] = None, *, restore_name: bool = False) -> None:
        gs = self._groups.get(group_id)
        tracked = list(gs.surfaces) if gs is not None else []
        targets = [surface_id] if surface_id is not None else tracked

        for sid in targets:
            self._stop_surface(group_id, sid)

        if restore_name and targets:
            await asyncio.gather(*(self._restore_original_name(group_id, sid) for sid in targets))

    async def stop_all(self, *, restore_name: bool = False) -> None:
        for group_id in list(self._groups):
            await self.stop(group_id, restore_name=restore_name)

    async def bootstrap(self) -> int:
        """Start every group the store reports as having an enabled ticker."""
        group_ids = await self.store.find_groups_with_active_tickers()
        results = await asyncio.gather(*(self.start(g) for g in group_ids), return_exceptions=True)
        started = 0
        for gid, res in zip(group_ids, results):
            if isinstance(res, Exception):
                self._log.warning("ticker_bootstrap_failed", group_id=gid, err=str(res))
            else:
                started += 1
        if started:
            self._log.info("ticker_bootstrapped", groups=started)
        return started

    def tracked(self, group_id: str) -> list[str]:
        gs = self._groups.get(group_id)
        return list(gs.surfaces) if gs is not None else []

    def statuses(self, group_id: str) -> dict[str, TickerStatus]:
        gs = self._groups.get(group_id)
        if gs is None:
            return {}
        now = self._clock()
        return {
            sid: TickerStatus(
                last_name=st.last_applied_name,
                last_updated_at=st.last_success_at,
                market_closed=st.last_market_closed,
                next_run_in_ms=ms_until(st.next_run_at, now) if st.next_run_at is not None else None,
            )
            for sid, st in gs.surfaces.items()
        }

    async def tick(self, group_id: str, surface_id: str) -> TickResult:
        """Run one tick for a tracked surface and return what to do next."""
        state = self._get_state(group_id, surface_id)
        if state is None:
            return TickResult("idle", None)
        try:
            return await self._tick(group_id, surface_id, state)
        except Exception as e:
            return self._on_failure(group_id, surface_id, state, e)

    # --------------------------- core internals ------------------------- #

    def _get_state(self, group_id: str, surface_id: str) -> Optional[RuntimeState]:
        gs = self._groups.get(group_id)
        return gs.surfaces.get(surface_id) if gs is not None else None

    def _base_interval(self, ticker: TickerConfig) -> int:
        iv = ticker.poll_interval_ms
        return iv if isinstance(iv, int) and iv > 0 else self.default_interval_ms

    def _start_surface(self, group_id: str, gs: GroupState, ticker: TickerConfig) -> None:
        base = self._base_interval(ticker)
        state = RuntimeState(base_interval_ms=base, current_backoff_ms=base)
        gs.surfaces[ticker.surface_id] = state
        state.task = asyncio.create_task(
            self._run(group_id, ticker.surface_id, state),
            name=f"ticker:{group_id}:{ticker.surface_id}",
        )
        self._log.info("ticker_active", group_id=group_id, surface_id=ticker.surface_id, base_interval_ms=base)

    def _stop_surface(self, group_id: str, surface_id: str) -> None:
        gs = self._groups.get(group_id)
        if gs is None:
            return
        state = gs.surfaces.pop(surface_id, None)
        if not gs.surfaces:
            self._groups.pop(group_id, None)
        if state is None:
            return
        state.stopped = True
        # a running tick is left to finish; it checks `stopped` before renaming
        if state.task is not None and state.phase == "scheduled" and state.task is not asyncio.current_task():
            state.task.cancel()
        self._log.info("ticker_stopped", group_id=group_id, surface_id=surface_id)

    async def _run(self, group_id: str, surface_id: str, state: RuntimeState) -> None:
        delay_ms = 0
        while not state.stopped:
            state.phase = "scheduled"
            state.next_run_at = self._clock() + delay_ms
            await self._sleep(delay_ms / 1000.0)
            if state.stopped:
                break
            state.phase = "running"
            result = await self.tick(group_id, surface_id)
            if result.delay_ms is None:
                break
            delay_ms = result.delay_ms
        state.next_run_at = None

    async def _tick(self, group_id: str, surface_id: str, state: RuntimeState) -> TickResult:
        cfg = await self.store.get_or_create(group_id)
        ticker = cfg.find_ticker(surface_id)
        if ticker is None or not ticker.enabled:
            self._log.info("ticker_idle", group_id=group_id, surface_id=surface_id)
            self._drop_state(group_id, surface_id, state)
            return TickResult("idle", None)

        base = self._base_interval(ticker)
        if base != state.base_interval_ms:
            state.base_interval_ms = base
            state.current_backoff_ms = base

        symbols = [s for s in (normalize_symbol(x) for x in (ticker.symbols or cfg.watchlist)) if s]
        if not symbols:
            self._log.warning("ticker_no_symbols", group_id=group_id, surface_id=surface_id)
            return TickResult("no_symbols", base * 2)

        quotes = await asyncio.gather(*(self.resolver.resolve(s, cfg.default_interval) for s in symbols))
        closed = all(not q.market_open for q in quotes)
        state.last_market_closed = closed

        name = format_ticker_name(quotes, ticker.template, ticker.precision, cfg.locale)
        if name is None:
            return TickResult("no_name", base)

        observed = await self.renamer.current_name(surface_id)
        if observed is None:
            self._log.warning("ticker_surface_missing", group_id=group_id, surface_id=surface_id)
            return TickResult("missing", base)

        delay = base * 2 if closed else base
        if name == observed or name == state.last_applied_name:
            state.last_applied_name = name
            state.last_success_at = self._clock()
            state.current_backoff_ms = base
            return TickResult("unchanged", delay, name)

        if state.stopped:
            return TickResult("idle", None)

        await self.renamer.rename(surface_id, name)
        state.last_applied_name = name
        state.last_success_at = self._clock()
        state.current_backoff_ms = base
        return TickResult("renamed", delay, name)

    def _on_failure(self, group_id: str, surface_id: str, state: RuntimeState, err: Exception) -> TickResult:
        cap = backoff_cap(state.base_interval_ms, self.max_backoff_multiplier)
        state.current_backoff_ms = int(next_backoff(state.current_backoff_ms, cap))
        self._log.warning(
            "ticker_tick_failed",
            group_id=group_id,
            surface_id=surface_id,
            err=str(err),
            err_type=type(err).__name__,
            backoff_ms=state.current_backoff_ms,
        )
        return TickResult("failed", state.current_backoff_ms, error=str(err))

    def _drop_state(self, group_id: str, surface_id: str, state: RuntimeState) -> None:
        gs = self._groups.get(group_id)
        if gs is not None and gs.surfaces.get(surface_id) is state:
            del gs.surfaces[surface_id]
            if not gs.surfaces:
                self._groups.pop(group_id, None)
        state.stopped = True

    async def _restore_original_name(self, group_id: str, surface_id: str) -> None:
        try:
            cfg = await self.store.get_or_create(group_id)
            ticker = cfg.find_ticker(surface_id)
            if ticker is None or not ticker.original_name:
                return
            current = await self.renamer.current_name(surface_id)
            if current is None or current == ticker.original_name:
                return
            await self.renamer.rename(surface_id, ticker.original_name)
            self._log.info("ticker_name_restored", group_id=group_id, surface_id=surface_id, name=ticker.original_name)
        except Exception as e:
            self._log.warning("ticker_restore_failed", group_id=group_id, surface_id=surface_id, err=str(e))
