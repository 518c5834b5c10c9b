from __future__ import annotations


class TickerError(Exception):
    """Base class for every error raised by the channel ticker."""


# ---- upstream market data ----

class UpstreamError(TickerError):
    """The market-data API could not deliver a usable payload."""

    # short label used in fallback warnings and logs
    reason = "live fetch failed"

    def __init__(self, message: str, *, symbol: str = "", status: int | None = None):
        super().__init__(message)
        self.symbol = symbol
        self.status = status


class UpstreamUnavailable(UpstreamError):
    """Transport error, timeout or a non-404 error status (transient)."""


class SymbolNotFound(UpstreamError):
    reason = "symbol not found upstream"


class EmptyPayload(UpstreamError):
    reason = "empty payload from upstream"


class QuoteUnavailable(TickerError):
    """No live quote and no last-good fallback for the key."""

    def __init__(self, key: str, reason: str, cause: Exception | None = None):
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason
        self.cause = cause


# ---- rename surfaces ----

class SurfaceError(TickerError):
    def __init__(self, message: str, *, surface_id: str = "", status: int | None = None):
        super().__init__(message)
        self.surface_id = surface_id
        self.status = status


class SurfaceNotFound(SurfaceError):
    pass


class RenameFailed(SurfaceError):
    pass


# ---- configuration ----

class InvalidTickerConfig(TickerError, ValueError):
    pass


class MissingSetting(TickerError, RuntimeError):
    pass
