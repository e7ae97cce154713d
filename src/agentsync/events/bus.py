"""
User-facing notices raised by the sync engine.

Notices are the side channel of the sync loop: things the user should hear
about (a new server version, a dropped connection) that do not belong in the
cache. :class:`NotificationBus` fans them out to whoever is listening.

Usage::

    bus = NotificationBus()
    bus.subscribe(Notice.INSTALLATION_UPDATED, lambda notice, payload: show(payload))
    bus.publish(Notice.INSTALLATION_UPDATED, {"version": "1.2.0"})
    await bus.drain()   # wait for async handlers (tests, shutdown)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import StrEnum
from typing import Any

import structlog

NoticeHandler = Callable[["Notice", dict[str, Any]], None | Awaitable[None]]


class Notice(StrEnum):
    """
    Notices published on a :class:`NotificationBus`.

    **Payload schemas by notice:**

    ``INSTALLATION_UPDATED``, ``INSTALLATION_UPDATE_AVAILABLE``
        ``version: str``, the agent server version that was installed or is
        ready to install.

    ``CONNECTION_CHANGED``
        ``channel: str``, ``state: str`` (a
        :class:`~agentsync.connection.ConnectionState` value),
        ``reconnecting: bool``, ``error: str | None``.
    """

    INSTALLATION_UPDATED = "installation.updated"
    INSTALLATION_UPDATE_AVAILABLE = "installation.update-available"
    CONNECTION_CHANGED = "connection.changed"


def _handler_name(handler: NoticeHandler) -> str:
    return getattr(handler, "__qualname__", repr(handler))


class NotificationBus:
    """
    Fan-out of :class:`Notice` values to subscribed handlers.

    Handlers subscribed to a notice run before catch-all handlers, each group
    in subscription order. ``publish()`` never raises: a failing handler is
    logged and the rest still run.

    A handler may be a coroutine function. Its coroutine becomes a task on the
    running loop that the bus holds until it finishes; a task that fails is
    logged under ``notice_handler_error`` like a synchronous failure.
    :meth:`drain` waits for the outstanding tasks. Published outside a running
    loop, the coroutine is closed without running and logged.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._by_notice: dict[Notice, list[NoticeHandler]] = {}
        self._catch_all: list[NoticeHandler] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("agentsync.notices")

    @property
    def pending(self) -> int:
        """Number of async handler tasks still running."""
        return len(self._tasks)

    def subscribe(self, notice: Notice, handler: NoticeHandler) -> None:
        self._by_notice.setdefault(notice, []).append(handler)

    def subscribe_all(self, handler: NoticeHandler) -> None:
        self._catch_all.append(handler)

    def unsubscribe(self, notice: Notice, handler: NoticeHandler) -> None:
        """Remove ``handler`` from ``notice``. Unknown handlers are ignored."""
        handlers = self._by_notice.get(notice)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, notice: Notice, payload: dict[str, Any]) -> None:
        for handler in [*self._by_notice.get(notice, ()), *self._catch_all]:
            try:
                result = handler(notice, payload)
            except Exception as exc:
                self._report(notice, handler, exc)
                continue
            if asyncio.iscoroutine(result):
                self._start(notice, handler, result)

    async def drain(self) -> None:
        """Wait until every async handler task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _start(
        self, notice: Notice, handler: NoticeHandler, coro: Coroutine[Any, Any, None]
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._logger.warning(
                "notice_handler_skipped_no_loop",
                notice=str(notice),
                handler=_handler_name(handler),
            )
            return
        task = loop.create_task(coro)
        self._tasks.add(task)

        def _finished(done: asyncio.Task[None]) -> None:
            self._tasks.discard(done)
            if not done.cancelled() and done.exception() is not None:
                self._report(notice, handler, done.exception())

        task.add_done_callback(_finished)

    def _report(self, notice: Notice, handler: NoticeHandler, exc: BaseException | None) -> None:
        self._logger.error(
            "notice_handler_error",
            notice=str(notice),
            handler=_handler_name(handler),
            error=str(exc),
        )
