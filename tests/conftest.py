"""Shared fixtures for agentsync tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest

from agentsync.cache import SyncCache
from agentsync.dispatcher import EventDispatcher
from agentsync.errors import TransportError
from agentsync.events.bus import NotificationBus, Notice
from agentsync.events.sink import DropCounter
from agentsync.models.session import ChannelKey
from agentsync.permissions import PermissionRegistry
from agentsync.reconciler import Reconciler
from agentsync.status import SessionStatusProjector, SessionStatusStore

NOW = 1_700_000_000_000


@pytest.fixture
def channel():
    """The ChannelKey most tests sync against."""
    return ChannelKey("http://agent.test", "/work/repo")


@pytest.fixture
def cache():
    return SyncCache()


@pytest.fixture
def status_store():
    return SessionStatusStore()


@pytest.fixture
def projector(status_store):
    return SessionStatusProjector(status_store, clock=lambda: NOW)


@pytest.fixture
def permissions():
    return PermissionRegistry()


@pytest.fixture
def notices():
    """NotificationBus with a .collected list for asserting notices."""
    bus = NotificationBus()
    collected: list[tuple[Notice, dict[str, Any]]] = []

    def _collect(notice: Notice, payload: dict[str, Any]) -> None:
        collected.append((notice, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def drops():
    return DropCounter()


@pytest.fixture
def reconciler(cache, projector, permissions, notices, drops):
    """Reconciler on isolated state with a fixed clock."""
    return Reconciler(cache, projector, permissions, notices, drops=drops, clock=lambda: NOW)


@pytest.fixture
def dispatcher(reconciler, drops):
    return EventDispatcher(reconciler, drops=drops)


# ── Frame builders ─────────────────────────────────────────────────────────────


def message_info(
    msg_id: str,
    session_id: str = "ses_1",
    role: str = "user",
    created: int = 100,
    completed: int | None = None,
) -> dict[str, Any]:
    """Wire-format ``info`` for a message."""
    time: dict[str, Any] = {"created": created}
    if completed is not None:
        time["completed"] = completed
    return {"id": msg_id, "sessionID": session_id, "role": role, "time": time}


def part_data(
    part_id: str,
    msg_id: str,
    session_id: str = "ses_1",
    part_type: str = "text",
    **fields: Any,
) -> dict[str, Any]:
    """Wire-format part payload."""
    if part_type == "text":
        fields.setdefault("text", "hi")
    return {"id": part_id, "sessionID": session_id, "messageID": msg_id, "type": part_type, **fields}


def frame(event_type: str, properties: dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "properties": properties})


# ── Fake transport ─────────────────────────────────────────────────────────────

_END = object()


class FakeConnection:
    """One opened fake channel. Tests push frames, errors or an end-of-stream."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, text: str) -> None:
        self._queue.put_nowait(text)

    def fail(self, exc: Exception | None = None) -> None:
        self._queue.put_nowait(exc or TransportError(self.url, "connection reset"))

    def end(self) -> None:
        self._queue.put_nowait(_END)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeTransport:
    """In-memory Transport. ``fail_next`` makes that many upcoming opens fail."""

    def __init__(self) -> None:
        self.opened: list[str] = []
        self.connections: list[FakeConnection] = []
        self.fail_next = 0

    @property
    def current(self) -> FakeConnection:
        return self.connections[-1]

    @asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[AsyncIterator[str]]:
        self.opened.append(url)
        await asyncio.sleep(0)
        if self.fail_next:
            self.fail_next -= 1
            raise TransportError(url, "connection refused")
        connection = FakeConnection(url)
        self.connections.append(connection)
        try:
            yield connection.frames()
        finally:
            connection.closed = True


class RecordingWaiter:
    """
    Back-off waiter that records requested delays (in ms).

    With ``block=True`` it waits for a wake signal only, standing in for an
    arbitrarily long back-off.
    """

    def __init__(self, block: bool = False) -> None:
        self.delays: list[int] = []
        self.block = block

    async def __call__(self, wake: asyncio.Event, delay_s: float) -> None:
        self.delays.append(round(delay_s * 1000))
        if self.block:
            await wake.wait()
        else:
            await asyncio.sleep(0)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def waiter():
    return RecordingWaiter()


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
