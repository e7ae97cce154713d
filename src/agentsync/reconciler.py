"""
Applies typed events to the shared cache.

The module has two layers:

* ``merge_*`` functions: pure functions of ``(current sequence, payload)`` to
  the next sequence. They never mutate their input, keep messages sorted by id
  with no duplicates, and are idempotent: applying the same payload twice
  yields the same sequence as applying it once. When nothing changes they
  return the input object itself, so the cache can skip notifying listeners.
* :class:`Reconciler`: an ``EventSink`` with one handler per event kind that
  reads the cache, calls the matching merge and writes the result back,
  forwarding side effects to the status projector, the permission registry
  and the notice bus.

Every handler runs synchronously to completion; nothing here awaits.
"""

from __future__ import annotations

import bisect
from collections.abc import Callable
from typing import Any

import structlog

from agentsync.cache import QueryKey, SyncCache
from agentsync.events.bus import NotificationBus, Notice
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
)
from agentsync.events.sink import DropCounter
from agentsync.events.taxonomy import EventKind
from agentsync.models.message import (
    Message,
    MessageWithParts,
    Part,
    RetryPart,
    pending_assistant_id,
)
from agentsync.models.session import ChannelKey, Permission
from agentsync.permissions import PermissionRegistry
from agentsync.status import SessionStatusProjector, now_ms

Messages = list[MessageWithParts]

# ── Pure merges ────────────────────────────────────────────────────────────────


def _index_of(messages: Messages, message_id: str) -> int:
    """Binary search for ``message_id`` in an id-sorted sequence; -1 if absent."""
    ids = [message.id for message in messages]
    index = bisect.bisect_left(ids, message_id)
    if index < len(ids) and ids[index] == message_id:
        return index
    return -1


def _insert_sorted(messages: Messages, entry: MessageWithParts) -> Messages:
    index = bisect.bisect_left([message.id for message in messages], entry.id)
    return [*messages[:index], entry, *messages[index:]]


def merge_message_updated(
    current: Messages | None,
    info: Message,
    optimistic_prefix: str = "optimistic_",
) -> Messages:
    """
    Insert a new message or replace the ``info`` of a known one.

    A new confirmed user message replaces every optimistic placeholder in the
    sequence. An existing message keeps its parts untouched.
    """
    if current is None:
        return [MessageWithParts(info=info)]

    index = _index_of(current, info.id)
    if index >= 0:
        existing = current[index]
        if existing.info == info:
            return current
        updated = list(current)
        updated[index] = MessageWithParts(info=info, parts=existing.parts)
        return updated

    base = current
    if info.role == "user" and not info.id.startswith(optimistic_prefix):
        base = [message for message in current if not message.id.startswith(optimistic_prefix)]
    return _insert_sorted(base, MessageWithParts(info=info))


def merge_part_updated(current: Messages | None, part: Part) -> Messages | None:
    """
    Replace a part in place by id, or append it to its message.

    Returns ``current`` unchanged when the owning message is not cached.
    """
    if current is None:
        return None
    index = _index_of(current, part.message_id)
    if index < 0:
        return current

    message = current[index]
    position = message.part_index(part.id)
    if position >= 0:
        if message.parts[position] == part:
            return current
        parts = list(message.parts)
        parts[position] = part
    else:
        parts = [*message.parts, part]

    updated = list(current)
    updated[index] = MessageWithParts(info=message.info, parts=parts)
    return updated


def merge_message_removed(current: Messages | None, message_id: str) -> Messages | None:
    if current is None or _index_of(current, message_id) < 0:
        return current
    return [message for message in current if message.id != message_id]


def merge_part_removed(current: Messages | None, message_id: str, part_id: str) -> Messages | None:
    if current is None:
        return None
    index = _index_of(current, message_id)
    if index < 0 or current[index].part_index(part_id) < 0:
        return current
    message = current[index]
    updated = list(current)
    updated[index] = MessageWithParts(
        info=message.info,
        parts=[part for part in message.parts if part.id != part_id],
    )
    return updated


def merge_session_idle(current: Messages | None, now: int) -> Messages | None:
    """Stamp ``time.completed = now`` on every assistant message still streaming."""
    if current is None:
        return None
    changed = False
    updated: Messages = []
    for message in current:
        info = message.info
        if info.role == "assistant" and not info.is_completed:
            time = info.time.model_copy(update={"completed": now})
            info = info.model_copy(update={"time": time})
            message = MessageWithParts(info=info, parts=message.parts)
            changed = True
        updated.append(message)
    return updated if changed else current


# ── Reconciler ─────────────────────────────────────────────────────────────────


class Reconciler:
    """
    Routes each event kind to its merge and side effects.

    Implements :class:`~agentsync.events.sink.EventSink`. Only the reconciler
    writes message entries; session, session-list and todo entries are only
    ever invalidated so the data service can supply the authoritative value.
    """

    def __init__(
        self,
        cache: SyncCache,
        projector: SessionStatusProjector,
        permissions: PermissionRegistry,
        notices: NotificationBus,
        *,
        optimistic_prefix: str = "optimistic_",
        drops: DropCounter | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._cache = cache
        self._projector = projector
        self._permissions = permissions
        self._notices = notices
        self._optimistic_prefix = optimistic_prefix
        self._drops = drops if drops is not None else DropCounter()
        self._clock = clock
        self._logger = structlog.get_logger("agentsync.reconciler")
        self._handlers: dict[EventKind, Callable[[ChannelKey, Any], None]] = {
            EventKind.SESSION_UPDATED: self._on_session_updated,
            EventKind.SESSION_DELETED: self._on_session_deleted,
            EventKind.SESSION_COMPACTED: self._on_session_compacted,
            EventKind.SESSION_IDLE: self._on_session_idle,
            EventKind.SESSION_STATUS: self._on_session_status,
            EventKind.MESSAGE_UPDATED: self._on_message_updated,
            EventKind.MESSAGE_REMOVED: self._on_message_removed,
            EventKind.PART_UPDATED: self._on_part_updated,
            EventKind.PART_REMOVED: self._on_part_removed,
            EventKind.PERMISSION_UPDATED: self._on_permission_updated,
            EventKind.PERMISSION_REPLIED: self._on_permission_replied,
            EventKind.TODO_UPDATED: self._on_todo_updated,
            EventKind.INSTALLATION_UPDATED: self._on_installation_updated,
            EventKind.INSTALLATION_UPDATE_AVAILABLE: self._on_installation_update_available,
        }

    @property
    def drops(self) -> DropCounter:
        return self._drops

    def handle(self, channel: ChannelKey, event: Event) -> None:
        handler = self._handlers.get(event.kind)
        if handler is not None:
            handler(channel, event.properties)

    def add_optimistic(self, channel: ChannelKey, message: MessageWithParts) -> None:
        """
        Show a locally composed user message before the server confirms it.

        The message id must carry the optimistic prefix; the placeholder is
        replaced by the next confirmed user message for the session.
        """
        if not message.id.startswith(self._optimistic_prefix):
            raise ValueError(f"Optimistic message ids must start with {self._optimistic_prefix!r}")

        def _merge(current: Messages | None) -> Messages:
            merged = merge_message_updated(current, message.info, self._optimistic_prefix)
            for part in message.parts:
                merged = merge_part_updated(merged, part) or merged
            return merged

        self._cache.update_messages(channel, message.info.session_id, _merge)

    # ── Sessions ───────────────────────────────────────────────────────────────

    def _on_session_updated(self, channel: ChannelKey, props: SessionUpdatedProperties) -> None:
        self._cache.invalidate_query(QueryKey.sessions(channel))
        self._cache.invalidate_query(QueryKey.session(channel, props.info.id))

    def _on_session_deleted(self, channel: ChannelKey, props: SessionDeletedProperties) -> None:
        session_id = props.target_id
        self._cache.invalidate_query(QueryKey.sessions(channel))
        self._cache.invalidate_query(QueryKey.session(channel, session_id))
        # The session is gone; there is nothing left to refetch for its messages.
        self._cache.remove_query(QueryKey.messages(channel, session_id))
        self._cache.remove_query(QueryKey.todos(channel, session_id))
        self._projector.on_deleted(session_id)

    def _on_session_compacted(self, channel: ChannelKey, props: SessionRefProperties) -> None:
        self._cache.invalidate(channel, props.session_id)

    def _on_session_idle(self, channel: ChannelKey, props: SessionRefProperties) -> None:
        self._projector.on_idle(props.session_id)
        now = self._clock()
        self._cache.update_messages(
            channel, props.session_id, lambda current: merge_session_idle(current, now)
        )

    def _on_session_status(self, channel: ChannelKey, props: SessionStatusProperties) -> None:
        self._projector.on_status(props.session_id, props.status)

    # ── Messages ───────────────────────────────────────────────────────────────

    def _on_message_updated(self, channel: ChannelKey, props: MessageUpdatedProperties) -> None:
        info = props.info
        if info.role == "assistant" and not info.is_completed:
            self._projector.on_assistant_progress(info.session_id)

        messages = self._cache.update_messages(
            channel,
            info.session_id,
            lambda current: merge_message_updated(current, info, self._optimistic_prefix),
        )

        if info.role == "assistant" and info.is_completed and messages is not None:
            if pending_assistant_id(messages) is None:
                self._projector.on_settled(info.session_id)

    def _on_message_removed(self, channel: ChannelKey, props: MessageRemovedProperties) -> None:
        self._cache.update_messages(
            channel,
            props.session_id,
            lambda current: merge_message_removed(current, props.message_id),
        )

    def _on_part_updated(self, channel: ChannelKey, props: PartUpdatedProperties) -> None:
        part = props.part
        if part.session_id is None:
            session_id = self._cache.find_message_session(channel, part.message_id)
            if session_id is None:
                self._drop("missing_parent_message", part, level="warning")
                return
            part = part.model_copy(update={"session_id": session_id})

        if isinstance(part, RetryPart):
            self._projector.on_retry(part.session_id, part)

        current = self._cache.get(channel, part.session_id)
        if current is None:
            # Nothing is loaded for this session; the next fetch will include the part.
            self._drop("missing_message_list", part, level="debug")
            return
        if _index_of(current, part.message_id) < 0:
            self._drop("missing_parent_message", part, level="warning")
            return

        self._cache.update_messages(
            channel, part.session_id, lambda messages: merge_part_updated(messages, part)
        )

    def _on_part_removed(self, channel: ChannelKey, props: PartRemovedProperties) -> None:
        self._cache.update_messages(
            channel,
            props.session_id,
            lambda current: merge_part_removed(current, props.message_id, props.part_id),
        )

    def _drop(self, reason: str, part: Part, level: str) -> None:
        self._drops.record(reason)
        getattr(self._logger, level)(
            "event_dropped",
            reason=reason,
            event_type=str(EventKind.PART_UPDATED),
            session_id=part.session_id,
            message_id=part.message_id,
            part_id=part.id,
        )

    # ── Permissions, todos, installation ───────────────────────────────────────

    def _on_permission_updated(self, channel: ChannelKey, props: Permission) -> None:
        self._permissions.add(props)

    def _on_permission_replied(
        self, channel: ChannelKey, props: PermissionRepliedProperties
    ) -> None:
        self._permissions.remove(props.permission_id)

    def _on_todo_updated(self, channel: ChannelKey, props: TodoUpdatedProperties) -> None:
        self._cache.invalidate_query(QueryKey.todos(channel, props.session_id))

    def _on_installation_updated(self, channel: ChannelKey, props: InstallationProperties) -> None:
        self._notices.publish(Notice.INSTALLATION_UPDATED, {"version": props.version})

    def _on_installation_update_available(
        self, channel: ChannelKey, props: InstallationProperties
    ) -> None:
        self._notices.publish(Notice.INSTALLATION_UPDATE_AVAILABLE, {"version": props.version})
