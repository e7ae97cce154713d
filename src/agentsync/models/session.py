"""Session-level records: channel keys, sessions, permissions, todos and status."""

from __future__ import annotations

from typing import Annotated, Literal, NamedTuple
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field


class ChannelKey(NamedTuple):
    """Identifies one logical push connection: (remote endpoint, working directory)."""

    endpoint: str
    directory: str | None = None

    def event_url(self, path: str = "/event") -> str:
        """Build the push-channel URL for this key."""
        url = self.endpoint.rstrip("/") + "/" + path.lstrip("/")
        if self.directory:
            url += "?" + urlencode({"directory": self.directory})
        return url

    def __str__(self) -> str:
        return f"{self.endpoint}#{self.directory or ''}"


# ── Sessions ───────────────────────────────────────────────────────────────────


class SessionTime(BaseModel):
    model_config = ConfigDict(extra="allow")

    created: int
    updated: int


class SessionRevert(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message_id: str = Field(alias="messageID")


class SessionRef(BaseModel):
    """
    The identifying part of a session carried by lifecycle events.

    Events only promise ``id``; whatever else the server sends is kept as extra
    attributes. Consumers refetch the full :class:`Session` when they need it.
    """

    model_config = ConfigDict(extra="allow")

    id: str


class Session(BaseModel):
    """Session metadata as returned by the agent server."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    title: str = ""
    parent_id: str | None = Field(default=None, alias="parentID")
    time: SessionTime
    revert: SessionRevert | None = None


class Permission(BaseModel):
    """A pending approval request raised by the agent."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    session_id: str = Field(alias="sessionID")
    type: str = ""
    title: str = ""


class Todo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    content: str = ""
    status: str = "pending"


# ── Session status ─────────────────────────────────────────────────────────────


class IdleStatus(BaseModel):
    type: Literal["idle"] = "idle"


class BusyStatus(BaseModel):
    type: Literal["busy"] = "busy"


class RetryStatus(BaseModel):
    """The agent server is retrying; ``next`` is a Unix millisecond timestamp."""

    type: Literal["retry"] = "retry"
    attempt: int
    message: str
    next: int

    def remaining_ms(self, now: int) -> int:
        """Countdown until the next attempt, never negative."""
        return max(0, self.next - now)


# Status is discriminated by ``type``.
SessionStatus = Annotated[
    IdleStatus | BusyStatus | RetryStatus,
    Field(discriminator="type"),
]

IDLE = IdleStatus()
BUSY = BusyStatus()
