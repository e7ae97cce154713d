"""Message and part models as delivered by the agent server."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ── Part Models ────────────────────────────────────────────────────────────────


class Part(BaseModel):
    """
    One part of a message.

    Only the identifying fields are modelled; type-specific fields the server
    sends are kept as extra attributes and round-trip through ``model_dump()``.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    # Streaming servers may omit sessionID; the owning message identifies the session.
    session_id: str | None = Field(default=None, alias="sessionID")
    message_id: str = Field(alias="messageID")
    type: str


class TextPart(Part):
    """A streamed text segment."""

    type: Literal["text"] = "text"
    text: str = ""


class ToolPart(Part):
    """A tool invocation; ``state`` holds the server's status object verbatim."""

    type: Literal["tool"] = "tool"
    tool: str = ""
    call_id: str | None = Field(default=None, alias="callID")
    state: dict[str, Any] = Field(default_factory=dict)


class RetryPart(Part):
    """Marker emitted while the agent server retries a failed provider call."""

    type: Literal["retry"] = "retry"
    attempt: int = 0
    error: dict[str, Any] | None = None
    next: int | None = None
    """Unix millisecond timestamp of the next attempt, when the server reports one."""

    @property
    def error_message(self) -> str:
        data = (self.error or {}).get("data") or {}
        message = data.get("message") if isinstance(data, dict) else None
        return message or "Retrying..."


_PART_TYPES: dict[str, type[Part]] = {
    "text": TextPart,
    "tool": ToolPart,
    "retry": RetryPart,
}


def parse_part(data: Any) -> Part:
    """
    Validate a raw part payload into the most specific part model.

    Unknown part types validate as the base :class:`Part`.
    """
    if isinstance(data, Part):
        return data
    part_type = data.get("type") if isinstance(data, dict) else None
    model = _PART_TYPES.get(part_type, Part) if isinstance(part_type, str) else Part
    return model.model_validate(data)


# ── Message Models ─────────────────────────────────────────────────────────────


class MessageTime(BaseModel):
    model_config = ConfigDict(extra="allow")

    created: int
    completed: int | None = None


class Message(BaseModel):
    """
    Message metadata (the ``info`` half of a cached message).

    IDs are assigned by the server and compare lexicographically in creation
    order; they are never parsed.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    session_id: str = Field(alias="sessionID")
    role: Literal["user", "assistant"]
    time: MessageTime

    @property
    def is_completed(self) -> bool:
        return self.time.completed is not None


class MessageWithParts(BaseModel):
    """A message together with its ordered list of parts."""

    info: Message
    parts: list[Part] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> str:
        return self.info.role

    def part_index(self, part_id: str) -> int:
        """Return the position of ``part_id`` in ``parts``, or -1."""
        for index, part in enumerate(self.parts):
            if part.id == part_id:
                return index
        return -1

    def text_content(self) -> str:
        """Concatenate text from all TextPart objects in this message."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


# ── Derived predicates ─────────────────────────────────────────────────────────


def is_streaming(message: MessageWithParts | Message) -> bool:
    """An assistant message is streaming until the server stamps ``time.completed``."""
    info = message.info if isinstance(message, MessageWithParts) else message
    return info.role == "assistant" and not info.is_completed


def pending_assistant_id(messages: Sequence[MessageWithParts]) -> str | None:
    """Return the id of the latest streaming assistant message, if any."""
    for message in reversed(messages):
        if is_streaming(message):
            return message.id
    return None


def is_queued(message: MessageWithParts, pending_id: str | None) -> bool:
    """
    True for a user message sent while an assistant reply is still streaming.

    Queued messages are ordinary records; this predicate only tells views to
    render them differently.
    """
    return message.role == "user" and pending_id is not None and message.id > pending_id
