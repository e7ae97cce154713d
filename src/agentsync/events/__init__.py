"""Push-channel event taxonomy, payloads and notice bus."""

from agentsync.events.bus import NotificationBus, Notice, NoticeHandler
from agentsync.events.payloads import (
    Event,
    InstallationProperties,
    MessageRemovedProperties,
    MessageUpdatedProperties,
    PartRemovedProperties,
    PartUpdatedProperties,
    PermissionRepliedProperties,
    SessionDeletedProperties,
    SessionRefProperties,
    SessionStatusProperties,
    SessionUpdatedProperties,
    TodoUpdatedProperties,
    decode_event,
    decode_frame,
)
from agentsync.events.sink import EventSink
from agentsync.events.taxonomy import EventKind, normalize_kind

__all__ = [
    "Event",
    "EventKind",
    "EventSink",
    "InstallationProperties",
    "MessageRemovedProperties",
    "MessageUpdatedProperties",
    "NotificationBus",
    "Notice",
    "NoticeHandler",
    "PartRemovedProperties",
    "PartUpdatedProperties",
    "PermissionRepliedProperties",
    "SessionDeletedProperties",
    "SessionRefProperties",
    "SessionStatusProperties",
    "SessionUpdatedProperties",
    "TodoUpdatedProperties",
    "decode_event",
    "decode_frame",
    "normalize_kind",
]
