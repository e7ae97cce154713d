"""Request/response access to sessions, messages and todos on the agent server."""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from agentsync.cache import QueryKey, QueryKind
from agentsync.models.message import Message, MessageWithParts, parse_part
from agentsync.models.session import ChannelKey, Session, Todo


class SessionDataService(Protocol):
    """Authoritative session/message state; the cache refetches through this."""

    async def list_sessions(self, channel: ChannelKey) -> list[Session]: ...

    async def get_session(self, channel: ChannelKey, session_id: str) -> Session: ...

    async def list_messages(
        self, channel: ChannelKey, session_id: str
    ) -> list[MessageWithParts]: ...

    async def list_todos(self, channel: ChannelKey, session_id: str) -> list[Todo]: ...

    async def create_session(
        self, channel: ChannelKey, title: str | None = None, parent_id: str | None = None
    ) -> Session: ...

    async def update_session_title(
        self, channel: ChannelKey, session_id: str, title: str
    ) -> Session: ...

    async def delete_session(self, channel: ChannelKey, session_id: str) -> None: ...

    async def revert_message(
        self, channel: ChannelKey, session_id: str, message_id: str
    ) -> Session: ...


def parse_message_list(payload: list[dict[str, Any]]) -> list[MessageWithParts]:
    """Validate a message-list response into id-ordered ``MessageWithParts``."""
    messages = [
        MessageWithParts(
            info=Message.model_validate(item["info"]),
            parts=[parse_part(part) for part in item.get("parts", [])],
        )
        for item in payload
    ]
    messages.sort(key=lambda message: message.id)
    return messages


class HttpSessionDataService:
    """
    :class:`SessionDataService` over the agent server's REST API.

    Every call carries the channel's working directory as the ``directory``
    query parameter. HTTP errors propagate as ``httpx.HTTPStatusError`` to the
    caller; the engine never retries them.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._logger = structlog.get_logger("agentsync.service")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        channel: ChannelKey,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        url = channel.endpoint.rstrip("/") + path
        params = {"directory": channel.directory} if channel.directory else None
        response = await self._client.request(method, url, params=params, json=json_body)
        response.raise_for_status()
        self._logger.debug("service_request", method=method, path=path, status=response.status_code)
        if not response.content:
            return None
        return response.json()

    async def list_sessions(self, channel: ChannelKey) -> list[Session]:
        payload = await self._request("GET", channel, "/session")
        return [Session.model_validate(item) for item in payload]

    async def get_session(self, channel: ChannelKey, session_id: str) -> Session:
        return Session.model_validate(await self._request("GET", channel, f"/session/{session_id}"))

    async def list_messages(self, channel: ChannelKey, session_id: str) -> list[MessageWithParts]:
        payload = await self._request("GET", channel, f"/session/{session_id}/message")
        return parse_message_list(payload)

    async def list_todos(self, channel: ChannelKey, session_id: str) -> list[Todo]:
        payload = await self._request("GET", channel, f"/session/{session_id}/todo")
        return [Todo.model_validate(item) for item in payload]

    async def create_session(
        self, channel: ChannelKey, title: str | None = None, parent_id: str | None = None
    ) -> Session:
        body: dict[str, Any] = {}
        if title is not None:
            body["title"] = title
        if parent_id is not None:
            body["parentID"] = parent_id
        return Session.model_validate(await self._request("POST", channel, "/session", body))

    async def update_session_title(
        self, channel: ChannelKey, session_id: str, title: str
    ) -> Session:
        payload = await self._request("PATCH", channel, f"/session/{session_id}", {"title": title})
        return Session.model_validate(payload)

    async def delete_session(self, channel: ChannelKey, session_id: str) -> None:
        await self._request("DELETE", channel, f"/session/{session_id}")

    async def revert_message(
        self, channel: ChannelKey, session_id: str, message_id: str
    ) -> Session:
        payload = await self._request(
            "POST", channel, f"/session/{session_id}/revert", {"messageID": message_id}
        )
        return Session.model_validate(payload)


class ServiceFetcher:
    """Adapts a :class:`SessionDataService` to the cache's ``Fetcher`` protocol."""

    def __init__(self, service: SessionDataService) -> None:
        self._service = service

    async def fetch(self, key: QueryKey) -> Any:
        if key.kind is QueryKind.SESSIONS:
            return await self._service.list_sessions(key.channel)
        if key.session_id is None:
            raise ValueError(f"Query {key.kind!s} needs a session id")
        if key.kind is QueryKind.SESSION:
            return await self._service.get_session(key.channel, key.session_id)
        if key.kind is QueryKind.MESSAGES:
            return await self._service.list_messages(key.channel, key.session_id)
        return await self._service.list_todos(key.channel, key.session_id)
