"""Pending permission requests raised by the agent."""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal

import structlog

from agentsync.models.session import Permission

PermissionChange = Literal["add", "remove"]
PermissionListener = Callable[[PermissionChange, Permission], None]


class PermissionRegistry:
    """
    Pending approval requests keyed by permission id.

    A request is added on ``permission.updated`` and removed on
    ``permission.replied`` or when the user dismisses it locally.
    """

    def __init__(self) -> None:
        self._pending: dict[str, Permission] = {}
        self._listeners: list[PermissionListener] = []
        self._logger = structlog.get_logger("agentsync.permissions")

    def add(self, permission: Permission) -> None:
        self._pending[permission.id] = permission
        self._notify("add", permission)

    def remove(self, permission_id: str) -> Permission | None:
        permission = self._pending.pop(permission_id, None)
        if permission is not None:
            self._notify("remove", permission)
        return permission

    def dismiss(self, permission_id: str) -> Permission | None:
        """Drop a request the user closed without answering."""
        self._logger.debug("permission_dismissed", permission_id=permission_id)
        return self.remove(permission_id)

    def get(self, permission_id: str) -> Permission | None:
        return self._pending.get(permission_id)

    def pending(self, session_id: str | None = None) -> list[Permission]:
        """Return pending requests in arrival order, optionally for one session."""
        return [
            permission
            for permission in self._pending.values()
            if session_id is None or permission.session_id == session_id
        ]

    def subscribe(self, listener: PermissionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self, change: PermissionChange, permission: Permission) -> None:
        for listener in list(self._listeners):
            try:
                listener(change, permission)
            except Exception as exc:
                self._logger.error(
                    "permission_listener_error",
                    change=change,
                    permission_id=permission.id,
                    error=str(exc),
                )
