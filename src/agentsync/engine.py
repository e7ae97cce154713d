"""SyncEngine: the composition root wiring the sync components together."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog

from agentsync.cache import Listener, SyncCache, Unsubscribe
from agentsync.connection import (
    ChannelSubscription,
    ConnectionManager,
    ConnectionStatus,
    Waiter,
    wait_or_wake,
)
from agentsync.dispatcher import EventDispatcher
from agentsync.errors import EngineClosedError, NotConnectedError
from agentsync.events.bus import NotificationBus
from agentsync.events.sink import DropCounter
from agentsync.models.config import SyncConfig
from agentsync.models.message import Message, MessageTime, MessageWithParts, TextPart
from agentsync.models.session import ChannelKey
from agentsync.permissions import PermissionRegistry
from agentsync.reconciler import Reconciler
from agentsync.service import HttpSessionDataService, ServiceFetcher, SessionDataService
from agentsync.status import (
    SessionStatusProjector,
    SessionStatusStore,
    Status,
    StatusListener,
    now_ms,
)
from agentsync.transport import SSETransport, Transport


class SyncEngine:
    """
    Keeps a local view of one agent server's sessions in sync with its event stream.

    The engine owns every piece of shared state (cache, status store,
    permission registry, notice bus) so separate engines are fully isolated.
    It follows one channel at a time; :meth:`connect` to another endpoint or
    directory closes the previous channel before opening the new one.

    Usage::

        async with SyncEngine.open("http://localhost:4096", "/work/repo") as engine:
            unsubscribe = engine.subscribe_messages("ses_1", render)
            engine.notify_visible()   # e.g. from a window-focus handler

        # Manual lifecycle
        engine = SyncEngine.create()
        await engine.connect("http://localhost:4096", "/work/repo")
        ...
        await engine.close()
    """

    def __init__(
        self,
        config: SyncConfig,
        cache: SyncCache,
        status_store: SessionStatusStore,
        permissions: PermissionRegistry,
        notices: NotificationBus,
        reconciler: Reconciler,
        dispatcher: EventDispatcher,
        connections: ConnectionManager,
        *,
        transport: Transport,
        service: SessionDataService | None = None,
        owns_transport: bool = False,
        owns_service: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config
        self._cache = cache
        self._status_store = status_store
        self._permissions = permissions
        self._notices = notices
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._connections = connections
        self._transport = transport
        self._service = service
        self._owns_transport = owns_transport
        self._owns_service = owns_service
        self._clock = clock
        self._subscription: ChannelSubscription | None = None
        self._optimistic_ids = itertools.count(1)
        self._closed = False
        self._logger = structlog.get_logger("agentsync.engine")

    @classmethod
    def create(
        cls,
        *,
        config: SyncConfig | None = None,
        transport: Transport | None = None,
        service: SessionDataService | None = None,
        cache: SyncCache | None = None,
        clock: Callable[[], int] = now_ms,
        waiter: Waiter = wait_or_wake,
    ) -> SyncEngine:
        """
        Build an engine with fresh, isolated state.

        Args:
            config: Engine configuration. Defaults to ``SyncConfig()``.
            transport: Push-channel transport. Defaults to an :class:`SSETransport`
                owned (and closed) by the engine.
            service: Data service the cache refetches through. Defaults to an
                :class:`HttpSessionDataService` owned by the engine.
            cache: Pre-built cache to share with views. A fetcher for
                ``service`` is attached to it.
            clock: Millisecond clock used for idle stamping and retry countdowns.
            waiter: Back-off wait; tests replace it to avoid sleeping.

        Returns:
            An engine that is not yet connected.
        """
        cfg = config or SyncConfig()
        owns_transport = transport is None
        owns_service = service is None
        transport = transport or SSETransport(config=cfg.transport)
        service = service or HttpSessionDataService()

        cache = cache or SyncCache()
        cache.attach_fetcher(ServiceFetcher(service))
        status_store = SessionStatusStore()
        projector = SessionStatusProjector(status_store, cfg.status, clock=clock)
        permissions = PermissionRegistry()
        notices = NotificationBus()
        drops = DropCounter()
        reconciler = Reconciler(
            cache,
            projector,
            permissions,
            notices,
            optimistic_prefix=cfg.optimistic_prefix,
            drops=drops,
            clock=clock,
        )
        dispatcher = EventDispatcher(reconciler, drops=drops)

        engine: SyncEngine

        def _on_frame(key: ChannelKey, frame: str) -> None:
            engine._deliver(key, frame)

        connections = ConnectionManager(transport, _on_frame, cfg, notices=notices, waiter=waiter)
        engine = cls(
            cfg,
            cache,
            status_store,
            permissions,
            notices,
            reconciler,
            dispatcher,
            connections,
            transport=transport,
            service=service,
            owns_transport=owns_transport,
            owns_service=owns_service,
            clock=clock,
        )
        return engine

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        endpoint: str,
        directory: str | None = None,
        **kwargs: Any,
    ) -> AsyncGenerator[SyncEngine, None]:
        """
        Create an engine, connect it, and close it when the block exits.

        Keyword arguments are passed to :meth:`create`.
        """
        engine = cls.create(**kwargs)
        try:
            await engine.connect(endpoint, directory)
            yield engine
        finally:
            await engine.close()

    # ── Channel lifecycle ──────────────────────────────────────────────────────

    async def connect(self, endpoint: str, directory: str | None = None) -> ChannelKey:
        """
        Follow the channel for ``(endpoint, directory)``.

        Connecting to the key already followed is a no-op. Connecting to a
        different key closes the current channel first, so no event from the
        old key is applied afterwards.
        """
        if self._closed:
            raise EngineClosedError("SyncEngine is closed")
        key = ChannelKey(endpoint, directory)
        if self._subscription is not None:
            if self._subscription.key == key:
                return key
            await self.disconnect()
        self._subscription = await self._connections.subscribe(key)
        self._logger.info("engine_connected", channel=str(key))
        return key

    switch = connect

    async def disconnect(self) -> None:
        """Stop following the current channel; no reconnect is scheduled."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.release()
            self._logger.info("engine_disconnected", channel=str(subscription.key))

    def reconnect(self) -> bool:
        """Reconnect now if the current channel is down."""
        if self._subscription is None:
            return False
        return self._connections.reconnect(self._subscription.key)

    def notify_visible(self) -> int:
        return self._connections.notify_visible()

    def notify_online(self) -> int:
        return self._connections.notify_online()

    async def close(self) -> None:
        """
        Close channels, cancel refetches, wait for notice handlers and release
        owned clients. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self._subscription = None
        await self._connections.close()
        self._cache.close()
        await self._notices.drain()
        if self._owns_transport and isinstance(self._transport, SSETransport):
            await self._transport.close()
        if self._owns_service and isinstance(self._service, HttpSessionDataService):
            await self._service.close()
        self._logger.info("engine_closed")

    async def __aenter__(self) -> SyncEngine:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _deliver(self, key: ChannelKey, frame: str) -> None:
        if self._subscription is None or self._subscription.key != key:
            self._logger.debug("frame_for_inactive_channel", channel=str(key))
            return
        self._dispatcher.dispatch(key, frame)

    # ── Reads for views ────────────────────────────────────────────────────────

    @property
    def channel(self) -> ChannelKey | None:
        return self._subscription.key if self._subscription is not None else None

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._subscription is None:
            return ConnectionStatus()
        return self._connections.status(self._subscription.key)

    def get_messages(self, session_id: str) -> list[MessageWithParts] | None:
        return self._cache.get(self._require_channel(), session_id)

    def subscribe_messages(self, session_id: str, listener: Listener) -> Unsubscribe:
        return self._cache.subscribe(self._require_channel(), session_id, listener)

    def invalidate_messages(self, session_id: str) -> None:
        self._cache.invalidate(self._require_channel(), session_id)

    def get_status(self, session_id: str) -> Status:
        return self._status_store.get_status(session_id)

    def subscribe_status(self, session_id: str, listener: StatusListener) -> Callable[[], None]:
        return self._status_store.subscribe(session_id, listener)

    def add_optimistic_message(self, session_id: str, text: str) -> MessageWithParts:
        """Show a user message locally until the server confirms it."""
        channel = self._require_channel()
        now = self._clock()
        message_id = f"{self._config.optimistic_prefix}{now}_{next(self._optimistic_ids)}"
        message = MessageWithParts(
            info=Message(
                id=message_id,
                session_id=session_id,
                role="user",
                time=MessageTime(created=now),
            ),
            parts=[
                TextPart(
                    id=f"{message_id}_text",
                    session_id=session_id,
                    message_id=message_id,
                    text=text,
                )
            ],
        )
        self._reconciler.add_optimistic(channel, message)
        return message

    def _require_channel(self) -> ChannelKey:
        if self._subscription is None:
            raise NotConnectedError("SyncEngine is not connected to a channel")
        return self._subscription.key

    @property
    def cache(self) -> SyncCache:
        return self._cache

    @property
    def status_store(self) -> SessionStatusStore:
        return self._status_store

    @property
    def permissions(self) -> PermissionRegistry:
        return self._permissions

    @property
    def notices(self) -> NotificationBus:
        return self._notices

    @property
    def service(self) -> SessionDataService | None:
        return self._service

    @property
    def drops(self) -> DropCounter:
        return self._dispatcher.drops

    @property
    def config(self) -> SyncConfig:
        return self._config
