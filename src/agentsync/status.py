"""Per-session status (idle / busy / retry) and the projector that derives it."""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from agentsync.models.config import StatusConfig
from agentsync.models.message import RetryPart
from agentsync.models.session import BUSY, IDLE, BusyStatus, IdleStatus, RetryStatus

Status = IdleStatus | BusyStatus | RetryStatus
StatusListener = Callable[[Status], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionStatusStore:
    """
    One status value per session id. Unknown sessions read as idle.

    Listeners are called with the new status whenever it changes.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._statuses: dict[str, Status] = {}
        self._listeners: dict[str, list[StatusListener]] = {}
        self._logger = logger or structlog.get_logger("agentsync.status")

    def get_status(self, session_id: str) -> Status:
        return self._statuses.get(session_id, IDLE)

    def set_status(self, session_id: str, status: Status) -> None:
        if self._statuses.get(session_id) == status:
            return
        self._statuses[session_id] = status
        self._notify(session_id, status)

    def clear_status(self, session_id: str) -> None:
        if self._statuses.pop(session_id, None) is not None:
            self._notify(session_id, IDLE)

    def subscribe(self, session_id: str, listener: StatusListener) -> Callable[[], None]:
        self._listeners.setdefault(session_id, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(session_id, [])
            try:
                listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self, session_id: str, status: Status) -> None:
        for listener in list(self._listeners.get(session_id, [])):
            try:
                listener(status)
            except Exception as exc:
                self._logger.error(
                    "status_listener_error",
                    session_id=session_id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(exc),
                )


class SessionStatusProjector:
    """
    Derives session status from the event stream and writes it to a store.

    Rules:
    - A streaming assistant message makes the session ``busy``, unless it is
      currently ``retry`` (retry stays visible until cleared).
    - A retry part makes it ``retry``. ``next`` comes from the part when the
      server sent one, otherwise ``now + retry_countdown_ms``.
    - ``session.idle`` makes it ``idle`` unconditionally.
    - When no streaming assistant message is left, ``busy`` settles to ``idle``.

    There is no timer: a session keeps its last status until the server says
    otherwise, and countdowns are computed by readers from ``next``.
    """

    def __init__(
        self,
        store: SessionStatusStore,
        config: StatusConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._config = config or StatusConfig()
        self._clock = clock

    def on_assistant_progress(self, session_id: str) -> None:
        if isinstance(self._store.get_status(session_id), RetryStatus):
            return
        self._store.set_status(session_id, BUSY)

    def on_retry(self, session_id: str, part: RetryPart) -> None:
        next_at = part.next
        if next_at is None:
            next_at = self._clock() + self._config.retry_countdown_ms
        self._store.set_status(
            session_id,
            RetryStatus(attempt=part.attempt, message=part.error_message, next=next_at),
        )

    def on_idle(self, session_id: str) -> None:
        self._store.set_status(session_id, IDLE)

    def on_status(self, session_id: str, status: Status) -> None:
        """Apply a status reported verbatim by the server."""
        self._store.set_status(session_id, status)

    def on_settled(self, session_id: str) -> None:
        if isinstance(self._store.get_status(session_id), BusyStatus):
            self._store.set_status(session_id, IDLE)

    def on_deleted(self, session_id: str) -> None:
        self._store.clear_status(session_id)
