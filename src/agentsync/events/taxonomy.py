"""The closed set of event kinds delivered over the push channel."""

from __future__ import annotations

from enum import StrEnum


class EventKind(StrEnum):
    """
    All event kinds the engine interprets.

    Typed ``properties`` models for each kind live in
    :mod:`agentsync.events.payloads`. Frames whose ``type`` is not listed here
    are ignored; this is not an error.

    ``messagev2.*`` types are historical aliases of ``message.*`` and are
    folded into the same kinds by :func:`normalize_kind`.
    """

    # Session lifecycle
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_COMPACTED = "session.compacted"
    SESSION_IDLE = "session.idle"
    SESSION_STATUS = "session.status"

    # Message lifecycle
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_REMOVED = "message.removed"
    PART_UPDATED = "message.part.updated"
    PART_REMOVED = "message.part.removed"

    # Permissions
    PERMISSION_UPDATED = "permission.updated"
    PERMISSION_REPLIED = "permission.replied"

    # Todos
    TODO_UPDATED = "todo.updated"

    # Server installation notices
    INSTALLATION_UPDATED = "installation.updated"
    INSTALLATION_UPDATE_AVAILABLE = "installation.update-available"


_LEGACY_PREFIX = "messagev2."


def normalize_kind(raw_type: str) -> EventKind | None:
    """
    Map a wire ``type`` string to its :class:`EventKind`.

    Returns ``None`` for types outside the taxonomy.
    """
    if raw_type.startswith(_LEGACY_PREFIX):
        raw_type = "message." + raw_type[len(_LEGACY_PREFIX) :]
    try:
        return EventKind(raw_type)
    except ValueError:
        return None
