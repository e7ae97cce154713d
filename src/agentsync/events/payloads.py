"""Typed ``properties`` models for each :class:`EventKind` and frame decoding.

Every frame on the push channel is one UTF-8 JSON object of the shape
``{"type": str, "properties": object}``. :func:`decode_frame` turns it into an
:class:`Event` whose ``properties`` is the model registered for its kind::

    event = decode_frame('{"type": "session.idle", "properties": {"sessionID": "s1"}}')
    assert event.kind is EventKind.SESSION_IDLE
    assert event.properties.session_id == "s1"
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from agentsync.errors import FrameDecodeError
from agentsync.events.taxonomy import EventKind, normalize_kind
from agentsync.models.message import Message, Part, parse_part
from agentsync.models.session import Permission, SessionRef, SessionStatus, Todo


class _Properties(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionUpdatedProperties(_Properties):
    """Payload for :attr:`EventKind.SESSION_UPDATED`."""

    info: SessionRef


class SessionDeletedProperties(_Properties):
    """Payload for :attr:`EventKind.SESSION_DELETED`.

    Servers send either a bare ``sessionID`` or the deleted ``info``.
    """

    session_id: str | None = Field(default=None, alias="sessionID")
    info: SessionRef | None = None

    @model_validator(mode="after")
    def require_target(self) -> SessionDeletedProperties:
        if self.session_id is None and self.info is None:
            raise ValueError("session.deleted needs sessionID or info")
        return self

    @property
    def target_id(self) -> str:
        return self.session_id or self.info.id  # type: ignore[union-attr]


class SessionRefProperties(_Properties):
    """Payload for :attr:`EventKind.SESSION_COMPACTED` and :attr:`EventKind.SESSION_IDLE`."""

    session_id: str = Field(alias="sessionID")


class SessionStatusProperties(_Properties):
    """Payload for :attr:`EventKind.SESSION_STATUS`."""

    session_id: str = Field(alias="sessionID")
    status: SessionStatus


# ── Message lifecycle ─────────────────────────────────────────────────────────


class MessageUpdatedProperties(_Properties):
    """Payload for :attr:`EventKind.MESSAGE_UPDATED`."""

    info: Message


class PartUpdatedProperties(_Properties):
    """Payload for :attr:`EventKind.PART_UPDATED`."""

    part: Part

    @field_validator("part", mode="before")
    @classmethod
    def _specific_part(cls, value: Any) -> Any:
        return parse_part(value)


class MessageRemovedProperties(_Properties):
    """Payload for :attr:`EventKind.MESSAGE_REMOVED`."""

    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")


class PartRemovedProperties(_Properties):
    """Payload for :attr:`EventKind.PART_REMOVED`."""

    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")
    part_id: str = Field(alias="partID")


# ── Permissions, todos, installation ──────────────────────────────────────────


class PermissionRepliedProperties(_Properties):
    """Payload for :attr:`EventKind.PERMISSION_REPLIED`."""

    session_id: str = Field(alias="sessionID")
    permission_id: str = Field(alias="permissionID")
    response: str = ""


class TodoUpdatedProperties(_Properties):
    """Payload for :attr:`EventKind.TODO_UPDATED`.

    ``todos`` is carried but not diffed; the cached list is refetched.
    """

    session_id: str = Field(alias="sessionID")
    todos: list[Todo] = Field(default_factory=list)


class InstallationProperties(_Properties):
    """Payload for both installation notices."""

    version: str


PROPERTIES_BY_KIND: dict[EventKind, type[BaseModel]] = {
    EventKind.SESSION_UPDATED: SessionUpdatedProperties,
    EventKind.SESSION_DELETED: SessionDeletedProperties,
    EventKind.SESSION_COMPACTED: SessionRefProperties,
    EventKind.SESSION_IDLE: SessionRefProperties,
    EventKind.SESSION_STATUS: SessionStatusProperties,
    EventKind.MESSAGE_UPDATED: MessageUpdatedProperties,
    EventKind.MESSAGE_REMOVED: MessageRemovedProperties,
    EventKind.PART_UPDATED: PartUpdatedProperties,
    EventKind.PART_REMOVED: PartRemovedProperties,
    EventKind.PERMISSION_UPDATED: Permission,
    EventKind.PERMISSION_REPLIED: PermissionRepliedProperties,
    EventKind.TODO_UPDATED: TodoUpdatedProperties,
    EventKind.INSTALLATION_UPDATED: InstallationProperties,
    EventKind.INSTALLATION_UPDATE_AVAILABLE: InstallationProperties,
}


@dataclass(frozen=True)
class Event:
    """A decoded frame: its normalized kind, typed properties and original wire type."""

    kind: EventKind
    properties: Any
    raw_type: str


def decode_event(data: Any) -> Event | None:
    """
    Validate an already-parsed frame object.

    Returns:
        The typed event, or ``None`` when the ``type`` is outside the taxonomy.

    Raises:
        FrameDecodeError: If the object is not a frame or its properties do
            not match the shape expected for its kind.
    """
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise FrameDecodeError(
            "invalid_shape", detail="frame is not an object with a string 'type'"
        )

    raw_type: str = data["type"]
    kind = normalize_kind(raw_type)
    if kind is None:
        return None

    properties = data.get("properties")
    if not isinstance(properties, dict):
        raise FrameDecodeError("invalid_shape", raw_type, "'properties' is not an object")

    try:
        model = PROPERTIES_BY_KIND[kind].model_validate(properties)
    except ValidationError as exc:
        raise FrameDecodeError("invalid_shape", raw_type, str(exc)) from exc
    return Event(kind=kind, properties=model, raw_type=raw_type)


def decode_frame(text: str | bytes) -> Event | None:
    """
    Parse one push frame.

    Raises:
        FrameDecodeError: ``reason="decode_error"`` for undecodable text,
            ``reason="invalid_shape"`` for a mis-shaped frame.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FrameDecodeError("decode_error", detail=str(exc)) from exc
    return decode_event(data)
