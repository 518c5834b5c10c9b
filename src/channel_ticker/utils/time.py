from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Optional

# --- clock helpers (epoch milliseconds everywhere in the ticker) ---

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def ms_until(ts_target_ms: float, now_ms: Optional[float] = None) -> int:
    """Non-negative time until target (clamped at 0)."""
    now = utc_now_ms() if now_ms is None else now_ms
    return int(max(0.0, ts_target_ms - now))

def minutes_between(a_ms: float, b_ms: float) -> float:
    return abs(a_ms - b_ms) / 60_000.0

# --- upstream timestamp normalization ---

def parse_timestamp_ms(value) -> Optional[int]:
    """
    Normalize an upstream timestamp to epoch milliseconds.

    Accepts epoch seconds, milliseconds or nanoseconds (int/float or numeric
    string) and ISO-8601 strings ("2024-02-01T14:32:01.123Z"). Returns None
    when the value cannot be resolved.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = int(text) if text.isdigit() else float(text)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)

    if isinstance(value, int):
        # exact integer path; floats lose ns precision
        if value <= 0:
            return None
        if value > 10**17:
            return value // 1_000_000
        if value < 10**11:
            return value * 1000
        return value

    if not isinstance(value, float):
        return None
    v = value
    if not math.isfinite(v) or v <= 0:
        return None
    if v > 1e17:    # ns -> ms
        v = v / 1e6
    elif v < 1e11:  # s -> ms
        v = v * 1000.0
    return int(v)
