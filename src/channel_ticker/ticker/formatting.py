from __future__ import annotations

import math
from typing import Optional, Sequence

from channel_ticker.utils.types import Quote, DEFAULT_TEMPLATE

MAX_NAME_LENGTH = 96   # platform limit for channel names
MAX_SEGMENTS = 4
SEPARATOR = " | "
MISSING_PRICE = "--"

# locales that write 1234,50
_DECIMAL_COMMA = frozenset({"de", "fr", "es", "it", "pt", "nl", "pl", "ru", "tr", "sv", "da", "fi", "nb", "cs"})

def display_symbol(symbol: str) -> str:
    """'ODANA:XAUUSD' -> 'XAUUSD' (vendor prefix dropped)."""
    return symbol.split(":", 1)[1] if ":" in symbol else symbol

def format_price(price: float, precision: int, locale: str = "en") -> str:
    if not isinstance(price, (int, float)) or not math.isfinite(price):
        return MISSING_PRICE
    text = f"{price:.{precision}f}"
    lang = (locale or "en").replace("_", "-").split("-", 1)[0].lower()
    if lang in _DECIMAL_COMMA:
        text = text.replace(".", ",")
    return text

def format_ticker_name(
    quotes: Sequence[Quote],
    template: Optional[str] = None,
    precision: int = 3,
    locale: str = "en",
) -> Optional[str]:
    """
    Render up to four quotes as one channel name, e.g.
    "XAUUSD:1234.50 | EURUSD:1.09" for template "{PAIR}:{PRICE}".
    Returns None when nothing is left to show.
    """
    fmt = template or DEFAULT_TEMPLATE
    segments = []
    for q in list(quotes)[:MAX_SEGMENTS]:
        seg = fmt.replace("{PAIR}", display_symbol(q.symbol), 1)
        seg = seg.replace("{PRICE}", format_price(q.price, precision, locale), 1)
        if seg:
            segments.append(seg)

    name = SEPARATOR.join(segments).strip()[:MAX_NAME_LENGTH]
    return name or None
