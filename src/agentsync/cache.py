"""
Keyed cache shared by the reconciler and any number of views.

One ``SyncCache`` is owned by the composition root (see
:class:`~agentsync.engine.SyncEngine`); tests create their own instances.

Entries are addressed by :class:`QueryKey`. The message view of the cache maps
``(channel, session_id)`` to an id-ordered list of
:class:`~agentsync.models.message.MessageWithParts`; the other kinds hold
whatever the data service returned for that query.

Values are treated as immutable: writers replace entries with new lists, and
readers must not mutate what :meth:`SyncCache.get` returns.

Usage::

    cache = SyncCache(fetcher=ServiceFetcher(service))
    unsubscribe = cache.subscribe(channel, "ses_1", lambda messages: render(messages))
    cache.invalidate(channel, "ses_1")   # drops the entry and schedules a refetch
    await cache.settle()                 # wait for in-flight refetches (tests, shutdown)
    unsubscribe()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import StrEnum
from typing import Any, NamedTuple, Protocol

import structlog

from agentsync.models.message import MessageWithParts
from agentsync.models.session import ChannelKey

Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class QueryKind(StrEnum):
    MESSAGES = "messages"
    SESSIONS = "sessions"
    SESSION = "session"
    TODOS = "todos"


class QueryKey(NamedTuple):
    """Address of one cache entry. ``session_id`` is ``None`` for the session list."""

    kind: QueryKind
    channel: ChannelKey
    session_id: str | None = None

    @classmethod
    def messages(cls, channel: ChannelKey, session_id: str) -> QueryKey:
        return cls(QueryKind.MESSAGES, channel, session_id)

    @classmethod
    def sessions(cls, channel: ChannelKey) -> QueryKey:
        return cls(QueryKind.SESSIONS, channel, None)

    @classmethod
    def session(cls, channel: ChannelKey, session_id: str) -> QueryKey:
        return cls(QueryKind.SESSION, channel, session_id)

    @classmethod
    def todos(cls, channel: ChannelKey, session_id: str) -> QueryKey:
        return cls(QueryKind.TODOS, channel, session_id)


class Fetcher(Protocol):
    """Loads the authoritative value for a query key from the data service."""

    async def fetch(self, key: QueryKey) -> Any: ...


class SyncCache:
    """
    In-memory keyed cache with per-key listeners and invalidate-and-refetch.

    Listeners receive the new value (``None`` when the entry is dropped) after
    every write to their key. Listener exceptions are logged and swallowed.

    Invalidation drops the entry immediately. If a fetcher is attached and the
    key has at least one listener, a refetch is scheduled on the running loop
    without being awaited; a failed refetch is logged and not retried.
    """

    def __init__(
        self,
        fetcher: Fetcher | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._entries: dict[QueryKey, Any] = {}
        self._listeners: dict[QueryKey, list[Listener]] = {}
        self._generations: dict[QueryKey, int] = {}
        self._fetches: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("agentsync.cache")

    def attach_fetcher(self, fetcher: Fetcher | None) -> None:
        self._fetcher = fetcher

    # ── Generic query API ──────────────────────────────────────────────────────

    def get_query(self, key: QueryKey) -> Any | None:
        return self._entries.get(key)

    def has_query(self, key: QueryKey) -> bool:
        return key in self._entries

    def set_query(self, key: QueryKey, value: Any) -> None:
        """Store ``value`` under ``key`` and notify listeners."""
        self._entries[key] = value
        self._notify(key, value)

    def remove_query(self, key: QueryKey) -> None:
        """Drop ``key`` without scheduling a refetch."""
        if self._entries.pop(key, None) is not None:
            self._notify(key, None)

    def subscribe_query(self, key: QueryKey, listener: Listener) -> Unsubscribe:
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            try:
                listeners.remove(listener)
            except ValueError:
                pass
            if not listeners:
                self._listeners.pop(key, None)

        return _unsubscribe

    def invalidate_query(self, key: QueryKey) -> None:
        """Drop ``key`` and, when it is being watched, refetch it in the background."""
        self._generations[key] = self._generations.get(key, 0) + 1
        self.remove_query(key)
        self._logger.debug("query_invalidated", kind=str(key.kind), session_id=key.session_id)
        if self._fetcher is not None and self._listeners.get(key):
            self._schedule_fetch(key)

    # ── Message view ───────────────────────────────────────────────────────────

    def get(self, channel: ChannelKey, session_id: str) -> list[MessageWithParts] | None:
        return self._entries.get(QueryKey.messages(channel, session_id))

    def set_messages(
        self, channel: ChannelKey, session_id: str, messages: list[MessageWithParts]
    ) -> None:
        self.set_query(QueryKey.messages(channel, session_id), messages)

    def update_messages(
        self,
        channel: ChannelKey,
        session_id: str,
        merge: Callable[[list[MessageWithParts] | None], list[MessageWithParts] | None],
    ) -> list[MessageWithParts] | None:
        """
        Apply ``merge`` to the cached sequence and store the result.

        ``merge`` returning its input unchanged (the same object) is a no-op
        and notifies nobody. Returning ``None`` leaves a missing entry missing.

        Returns:
            The sequence now cached for the session.
        """
        key = QueryKey.messages(channel, session_id)
        current = self._entries.get(key)
        updated = merge(current)
        if updated is current:
            return current
        if updated is None:
            self.remove_query(key)
        else:
            self.set_query(key, updated)
        return updated

    def find_message_session(self, channel: ChannelKey, message_id: str) -> str | None:
        """Return the session whose cached list on ``channel`` holds ``message_id``."""
        for key, messages in self._entries.items():
            if key.kind is not QueryKind.MESSAGES or key.channel != channel:
                continue
            if any(message.id == message_id for message in messages):
                return key.session_id
        return None

    def subscribe(self, channel: ChannelKey, session_id: str, listener: Listener) -> Unsubscribe:
        return self.subscribe_query(QueryKey.messages(channel, session_id), listener)

    def invalidate(self, channel: ChannelKey, session_id: str) -> None:
        self.invalidate_query(QueryKey.messages(channel, session_id))

    # ── Background refetch ─────────────────────────────────────────────────────

    async def settle(self) -> None:
        """Wait until every in-flight refetch has finished."""
        while self._fetches:
            await asyncio.gather(*list(self._fetches), return_exceptions=True)

    def close(self) -> None:
        """Cancel in-flight refetches and drop all listeners."""
        for task in list(self._fetches):
            task.cancel()
        self._listeners.clear()

    def _schedule_fetch(self, key: QueryKey) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("refetch_skipped_no_loop", kind=str(key.kind))
            return
        task = loop.create_task(self._refetch(key, self._generations.get(key, 0)))
        self._fetches.add(task)
        task.add_done_callback(self._fetches.discard)

    async def _refetch(self, key: QueryKey, generation: int) -> None:
        assert self._fetcher is not None
        try:
            value = await self._fetcher.fetch(key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning(
                "refetch_failed",
                kind=str(key.kind),
                channel=str(key.channel),
                session_id=key.session_id,
                error=str(exc),
            )
            return
        # A newer invalidation owns the entry now.
        if self._generations.get(key, 0) != generation:
            return
        self.set_query(key, value)

    def _notify(self, key: QueryKey, value: Any) -> None:
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(value)
            except Exception as exc:
                self._logger.error(
                    "cache_listener_error",
                    kind=str(key.kind),
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(exc),
                )
