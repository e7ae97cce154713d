"""Tests for Backoff, Channel and ConnectionManager."""

from __future__ import annotations

import asyncio

import pytest

from agentsync.connection import (
    CONNECTION_LOST,
    Backoff,
    Channel,
    ConnectionManager,
    ConnectionState,
    wait_or_wake,
)
from agentsync.errors import EngineClosedError
from agentsync.events.bus import Notice
from agentsync.models.config import ReconnectConfig, SyncConfig
from agentsync.models.session import ChannelKey
from tests.conftest import RecordingWaiter, until


def _connected(target) -> bool:
    return target.status.state is ConnectionState.CONNECTED


def _disconnected(target) -> bool:
    return target.status.state is ConnectionState.DISCONNECTED and target.status.reconnecting


class Frames:
    def __init__(self) -> None:
        self.received: list[tuple[ChannelKey, str]] = []

    def __call__(self, key: ChannelKey, frame: str) -> None:
        self.received.append((key, frame))


class TestBackoff:
    def test_doubles_up_to_cap(self):
        backoff = Backoff()
        delays = [backoff.next_delay() for _ in range(8)]
        assert delays == [1_000, 2_000, 4_000, 8_000, 16_000, 30_000, 30_000, 30_000]

    def test_reset(self):
        backoff = Backoff.from_config(ReconnectConfig(initial_delay_ms=250, max_delay_ms=1_000))
        backoff.next_delay()
        backoff.next_delay()
        assert backoff.current == 1_000
        backoff.reset()
        assert backoff.current == 250


class TestWaitOrWake:
    async def test_times_out(self):
        await asyncio.wait_for(wait_or_wake(asyncio.Event(), 0.01), timeout=1.0)

    async def test_wake_cuts_wait_short(self):
        wake = asyncio.Event()
        wake.set()
        await asyncio.wait_for(wait_or_wake(wake, 60.0), timeout=1.0)


class TestChannel:
    async def test_connects_and_delivers_in_order(self, channel, transport):
        frames = Frames()
        ch = Channel(channel, transport, frames)
        ch.start()
        await until(lambda: _connected(ch))
        assert transport.opened == ["http://agent.test/event?directory=%2Fwork%2Frepo"]

        transport.current.push("a")
        transport.current.push("b")
        await until(lambda: len(frames.received) == 2)
        assert frames.received == [(channel, "a"), (channel, "b")]
        await ch.close()

    async def test_backoff_sequence_then_reset(self, channel, transport, waiter):
        """Three failed opens wait 1s, 2s, 4s; a successful open resets the delay."""
        transport.fail_next = 3
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()
        await until(lambda: _connected(ch))
        assert waiter.delays == [1_000, 2_000, 4_000]
        assert ch.backoff.current == 1_000

        transport.current.fail()
        await until(lambda: len(transport.connections) == 2 and _connected(ch))
        assert waiter.delays == [1_000, 2_000, 4_000, 1_000]
        await ch.close()

    async def test_backoff_capped(self, channel, transport, waiter):
        """The delay never exceeds max_delay_ms."""
        transport.fail_next = 8
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()
        await until(lambda: _connected(ch))
        assert waiter.delays[-3:] == [30_000, 30_000, 30_000]
        await ch.close()

    async def test_server_close_reconnects(self, channel, transport, waiter):
        """A server-side end of stream is treated like an error and reconnected."""
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()
        await until(lambda: _connected(ch))
        first = transport.current
        first.end()
        await until(lambda: len(transport.connections) == 2 and _connected(ch))
        assert first.closed
        assert waiter.delays == [1_000]
        await ch.close()

    async def test_disconnect_reports_connection_lost(self, channel, transport):
        waiter = RecordingWaiter(block=True)
        transport.fail_next = 1
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()
        await until(lambda: _disconnected(ch))
        assert ch.status.error == CONNECTION_LOST
        await ch.close()
        assert ch.status.state is ConnectionState.DISCONNECTED
        assert not ch.status.reconnecting

    async def test_wake_skips_wait_without_resetting_delay(self, channel, transport):
        """A wake cuts the wait short but the next failure still doubles the delay."""
        waiter = RecordingWaiter(block=True)
        transport.fail_next = 2
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()

        await until(lambda: _disconnected(ch) and len(waiter.delays) == 1)
        assert ch.wake()
        await until(lambda: len(waiter.delays) == 2)
        assert waiter.delays == [1_000, 2_000]

        assert ch.wake()
        await until(lambda: _connected(ch))
        assert not ch.wake()
        await ch.close()

    async def test_close_cancels_pending_reconnect(self, channel, transport):
        """Closing during back-off means no further open attempt."""
        waiter = RecordingWaiter(block=True)
        transport.fail_next = 1
        ch = Channel(channel, transport, Frames(), waiter=waiter)
        ch.start()
        await until(lambda: _disconnected(ch))

        await ch.close()
        assert not ch.wake()
        await asyncio.sleep(0.01)
        assert len(transport.opened) == 1

    async def test_close_stops_delivery(self, channel, transport):
        """Frames arriving after close never reach the frame handler."""
        frames = Frames()
        ch = Channel(channel, transport, frames)
        ch.start()
        await until(lambda: _connected(ch))
        connection = transport.current

        await ch.close()
        assert connection.closed
        assert ch.closed
        connection.push("late")
        await asyncio.sleep(0.01)
        assert frames.received == []


class TestConnectionManager:
    async def test_one_channel_per_key(self, channel, transport):
        """Subscriptions are reference counted; the last release closes the channel."""
        manager = ConnectionManager(transport, Frames())
        first = await manager.subscribe(channel)
        second = await manager.subscribe(channel)
        await until(lambda: _connected(first))
        assert len(transport.opened) == 1
        assert manager.keys == [channel]

        await first.release()
        await first.release()
        assert manager.channel(channel) is not None
        assert not transport.current.closed

        await second.release()
        assert manager.channel(channel) is None
        assert transport.current.closed
        assert manager.status(channel).state is ConnectionState.DISCONNECTED

    async def test_switching_keys_isolates_frames(self, transport):
        """After switching keys, the old channel delivers nothing."""
        frames = Frames()
        manager = ConnectionManager(transport, frames)
        old_key = ChannelKey("http://agent.test", "/a")
        new_key = ChannelKey("http://agent.test", "/b")

        old = await manager.subscribe(old_key)
        await until(lambda: _connected(old))
        old_connection = transport.current
        await old.release()

        new = await manager.subscribe(new_key)
        await until(lambda: _connected(new))
        old_connection.push("stale")
        transport.current.push("fresh")
        await until(lambda: len(frames.received) == 1)
        await asyncio.sleep(0.01)

        assert frames.received == [(new_key, "fresh")]
        assert old_connection.closed
        await manager.close()

    async def test_host_signals_wake_disconnected_channels(self, transport):
        """notify_visible wakes every channel that is down."""
        waiter = RecordingWaiter(block=True)
        transport.fail_next = 2
        manager = ConnectionManager(transport, Frames(), waiter=waiter)
        first = await manager.subscribe(ChannelKey("http://a"))
        second = await manager.subscribe(ChannelKey("http://b"))
        await until(lambda: _disconnected(first) and _disconnected(second))

        assert manager.notify_visible() == 2
        await until(lambda: _connected(first) and _connected(second))
        assert manager.notify_online() == 0
        await manager.close()

    async def test_manual_reconnect(self, channel, transport):
        waiter = RecordingWaiter(block=True)
        transport.fail_next = 1
        manager = ConnectionManager(transport, Frames(), waiter=waiter)
        subscription = await manager.subscribe(channel)
        await until(lambda: _disconnected(subscription))

        assert manager.reconnect(channel)
        await until(lambda: _connected(subscription))
        assert not manager.reconnect(channel)
        assert not manager.reconnect(ChannelKey("http://elsewhere"))
        await manager.close()

    async def test_publishes_connection_changes(self, channel, transport, notices):
        manager = ConnectionManager(transport, Frames(), notices=notices)
        subscription = await manager.subscribe(channel)
        await until(lambda: _connected(subscription))
        await manager.close()

        states = [
            payload["state"]
            for notice, payload in notices.collected
            if notice is Notice.CONNECTION_CHANGED
        ]
        assert states == ["connecting", "connected", "disconnected"]

    async def test_closed_manager_rejects_subscriptions(self, channel, transport):
        manager = ConnectionManager(transport, Frames(), SyncConfig())
        subscription = await manager.subscribe(channel)
        await manager.close()
        assert manager.keys == []
        with pytest.raises(EngineClosedError):
            await manager.subscribe(channel)
        await subscription.release()
