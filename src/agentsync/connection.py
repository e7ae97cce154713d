"""
Push-channel lifecycle: one reconnecting channel per :class:`ChannelKey`.

State machine per channel::

    DISCONNECTED ──(start / wake)──▶ CONNECTING ──(open ok)──▶ CONNECTED
          ▲                              │                         │
          └───────(open failed)──────────┘◀──(error / server close)┘

After every failure the transport handle is closed, a reconnect is scheduled
after the current back-off delay, and the delay grows by the configured
multiplier up to the cap. Only a successful open resets it. A ``wake()`` (host
became visible or came back online, or a manual reconnect) cuts a pending wait
short without touching the delay.

Each channel's reconnect loop checks its :class:`CancellationToken` before
every attempt and before delivering every frame, so once a channel is closed
nothing it receives reaches the dispatcher.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import StrEnum

import structlog
from pydantic import BaseModel, ConfigDict

from agentsync.errors import EngineClosedError
from agentsync.events.bus import NotificationBus, Notice
from agentsync.models.config import ReconnectConfig, SyncConfig
from agentsync.models.session import ChannelKey
from agentsync.transport import Transport

FrameHandler = Callable[[ChannelKey, str], object]
Waiter = Callable[[asyncio.Event, float], Awaitable[None]]

CONNECTION_LOST = "Connection lost. Reconnecting..."


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStatus(BaseModel):
    """What observers see of a channel: its state and a transient error text."""

    model_config = ConfigDict(frozen=True)

    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnecting: bool = False
    error: str | None = None


class Backoff:
    """Exponential reconnect delay with a cap, in milliseconds."""

    def __init__(
        self, initial_ms: int = 1_000, multiplier: float = 2.0, max_ms: int = 30_000
    ) -> None:
        self._initial = initial_ms
        self._multiplier = multiplier
        self._max = max_ms
        self._current = initial_ms

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> Backoff:
        return cls(config.initial_delay_ms, config.multiplier, config.max_delay_ms)

    @property
    def current(self) -> int:
        """The delay the next scheduled reconnect will use."""
        return self._current

    def next_delay(self) -> int:
        """Return the delay to wait now and grow the delay for the attempt after."""
        delay = self._current
        self._current = min(int(delay * self._multiplier), self._max)
        return delay

    def reset(self) -> None:
        self._current = self._initial


class CancellationToken:
    """Cooperative cancellation flag shared between a channel and its loop."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


async def wait_or_wake(wake: asyncio.Event, delay_s: float) -> None:
    """Sleep for ``delay_s`` seconds or until ``wake`` is set, whichever is first."""
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(wake.wait(), timeout=delay_s)


class Channel:
    """A single push connection for one key, with its own reconnect loop."""

    def __init__(
        self,
        key: ChannelKey,
        transport: Transport,
        on_frame: FrameHandler,
        *,
        config: SyncConfig | None = None,
        on_status: Callable[[ChannelKey, ConnectionStatus], None] | None = None,
        waiter: Waiter = wait_or_wake,
    ) -> None:
        cfg = config or SyncConfig()
        self.key = key
        self.url = key.event_url(cfg.transport.event_path)
        self._transport = transport
        self._on_frame = on_frame
        self._on_status = on_status
        self._waiter = waiter
        self._backoff = Backoff.from_config(cfg.reconnect)
        self._token = CancellationToken()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._status = ConnectionStatus()
        self._logger = structlog.get_logger("agentsync.connection").bind(channel=str(key))

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    @property
    def closed(self) -> bool:
        return self._token.cancelled

    def start(self) -> None:
        """Start the reconnect loop on the running event loop. Idempotent."""
        if self._task is None and not self._token.cancelled:
            self._task = asyncio.get_running_loop().create_task(
                self._run(self._token), name=f"agentsync-channel:{self.key}"
            )

    def wake(self) -> bool:
        """
        Skip the rest of a pending back-off wait.

        Returns:
            True if a reconnect attempt was brought forward, False when the
            channel is connected, mid-connect, or closed.
        """
        if self._token.cancelled or self._status.state is not ConnectionState.DISCONNECTED:
            return False
        self._wake.set()
        return True

    async def close(self) -> None:
        """Cancel the loop and close the transport. No reconnect follows."""
        self._token.cancel()
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._set_status(ConnectionStatus())
        self._logger.debug("channel_closed")

    async def _run(self, token: CancellationToken) -> None:
        while not token.cancelled:
            self._wake.clear()
            self._set_status(self._status.model_copy(update={"state": ConnectionState.CONNECTING}))
            try:
                async with self._transport.open(self.url) as frames:
                    if token.cancelled:
                        return
                    self._backoff.reset()
                    self._set_status(ConnectionStatus(state=ConnectionState.CONNECTED))
                    self._logger.info("channel_connected", url=self.url)
                    async for frame in frames:
                        if token.cancelled:
                            return
                        self._on_frame(self.key, frame)
                detail = "closed by server"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__

            if token.cancelled:
                return
            delay = self._backoff.next_delay()
            self._set_status(
                ConnectionStatus(
                    state=ConnectionState.DISCONNECTED, reconnecting=True, error=CONNECTION_LOST
                )
            )
            self._logger.warning("channel_disconnected", error=detail, retry_in_ms=delay)
            await self._waiter(self._wake, delay / 1000)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status is not None:
            self._on_status(self.key, status)


class ChannelSubscription:
    """A handle on one subscription to a channel; release it to let the channel go."""

    def __init__(self, manager: ConnectionManager, key: ChannelKey) -> None:
        self._manager = manager
        self.key = key
        self._released = False

    @property
    def status(self) -> ConnectionStatus:
        return self._manager.status(self.key)

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Release this subscription. Idempotent."""
        if self._released:
            return
        self._released = True
        await self._manager.release(self.key)

    async def __aenter__(self) -> ChannelSubscription:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.release()


class ConnectionManager:
    """
    Keeps exactly one live :class:`Channel` per key while anything subscribes.

    Subscriptions are reference counted: the first one for a key opens the
    channel, the last release closes it and cancels any pending reconnect.
    Connection-state changes are published as ``Notice.CONNECTION_CHANGED``
    when a notice bus is given.
    """

    def __init__(
        self,
        transport: Transport,
        on_frame: FrameHandler,
        config: SyncConfig | None = None,
        *,
        notices: NotificationBus | None = None,
        waiter: Waiter = wait_or_wake,
    ) -> None:
        self._transport = transport
        self._on_frame = on_frame
        self._config = config or SyncConfig()
        self._notices = notices
        self._waiter = waiter
        self._channels: dict[ChannelKey, Channel] = {}
        self._refcounts: dict[ChannelKey, int] = {}
        self._closed = False
        self._logger = structlog.get_logger("agentsync.connection")

    @property
    def keys(self) -> list[ChannelKey]:
        return list(self._channels)

    def channel(self, key: ChannelKey) -> Channel | None:
        return self._channels.get(key)

    def status(self, key: ChannelKey) -> ConnectionStatus:
        channel = self._channels.get(key)
        return channel.status if channel is not None else ConnectionStatus()

    async def subscribe(self, key: ChannelKey) -> ChannelSubscription:
        """Subscribe to ``key``, opening its channel if this is the first subscriber."""
        if self._closed:
            raise EngineClosedError("ConnectionManager is closed")
        channel = self._channels.get(key)
        if channel is None:
            channel = Channel(
                key,
                self._transport,
                self._on_frame,
                config=self._config,
                on_status=self._publish_status,
                waiter=self._waiter,
            )
            self._channels[key] = channel
            channel.start()
            self._logger.debug("channel_opened", channel=str(key))
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        return ChannelSubscription(self, key)

    async def release(self, key: ChannelKey) -> None:
        remaining = self._refcounts.get(key, 0) - 1
        if remaining > 0:
            self._refcounts[key] = remaining
            return
        self._refcounts.pop(key, None)
        channel = self._channels.pop(key, None)
        if channel is not None:
            await channel.close()

    def reconnect(self, key: ChannelKey) -> bool:
        """Manually bring forward the reconnect of a disconnected channel."""
        channel = self._channels.get(key)
        return channel.wake() if channel is not None else False

    def notify_visible(self) -> int:
        """The host became visible again; reconnect every channel that is down."""
        return self._wake_all("visible")

    def notify_online(self) -> int:
        """The host network came back; reconnect every channel that is down."""
        return self._wake_all("online")

    async def close(self) -> None:
        """Close every channel. Further subscriptions raise ``EngineClosedError``."""
        self._closed = True
        channels = list(self._channels.values())
        self._channels.clear()
        self._refcounts.clear()
        for channel in channels:
            await channel.close()

    def _wake_all(self, signal: str) -> int:
        woken = sum(1 for channel in list(self._channels.values()) if channel.wake())
        self._logger.debug("host_signal", signal=signal, reconnecting=woken)
        return woken

    def _publish_status(self, key: ChannelKey, status: ConnectionStatus) -> None:
        if self._notices is None:
            return
        self._notices.publish(
            Notice.CONNECTION_CHANGED,
            {
                "channel": str(key),
                "state": str(status.state),
                "reconnecting": status.reconnecting,
                "error": status.error,
            },
        )
