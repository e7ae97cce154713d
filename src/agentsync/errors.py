"""Exception types raised inside the sync engine."""

from __future__ import annotations


class AgentSyncError(Exception):
    """Base class for agentsync errors."""


class FrameDecodeError(AgentSyncError):
    """Raised when a push frame cannot be decoded into a typed event.

    Caught by the dispatcher and converted to a logged drop; never escapes
    the engine.
    """

    def __init__(self, reason: str, event_type: str | None = None, detail: str = "") -> None:
        message = f"Cannot decode frame ({reason})"
        if event_type:
            message += f" for {event_type!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.reason = reason
        self.event_type = event_type
        self.detail = detail


class TransportError(AgentSyncError):
    """Raised by a transport when the push channel fails to open or drops."""

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"Transport error for {url}: {detail}")
        self.url = url
        self.detail = detail


class EngineClosedError(AgentSyncError):
    """Raised when a closed engine or connection manager is used again."""


class NotConnectedError(AgentSyncError):
    """Raised when a channel-scoped read is made before the engine is connected."""
