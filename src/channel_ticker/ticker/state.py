from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Literal, Optional

Phase = Literal["scheduled", "running"]

TickKind = Literal[
    "renamed",      # rename call issued and accepted
    "unchanged",    # candidate equals observed / last applied name
    "no_symbols",   # nothing configured to show
    "no_name",      # formatter produced nothing
    "missing",      # surface not found on the platform
    "failed",       # resolver / lookup / rename error, backoff applied
    "idle",         # config disabled or gone, state dropped
]

@dataclass(slots=True)
class RuntimeState:
    """Per-(group, surface) scheduler bookkeeping. Only that surface's task touches it."""
    base_interval_ms: int
    current_backoff_ms: int
    task: Optional[asyncio.Task] = None
    phase: Phase = "scheduled"
    stopped: bool = False
    last_applied_name: Optional[str] = None
    last_success_at: Optional[int] = None      # epoch ms
    next_run_at: Optional[int] = None          # epoch ms
    last_market_closed: bool = False

@dataclass(slots=True)
class GroupState:
    surfaces: dict[str, RuntimeState] = field(default_factory=dict)

@dataclass(frozen=True, slots=True)
class TickResult:
    kind: TickKind
    delay_ms: Optional[int]      # None -> no further tick
    name: Optional[str] = None
    error: Optional[str] = None

@dataclass(frozen=True, slots=True)
class TickerStatus:
    last_name: Optional[str]
    last_updated_at: Optional[int]
    market_closed: bool
    next_run_in_ms: Optional[int]
