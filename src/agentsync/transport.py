"""Push-channel transports: open a URL and yield one frame text per pushed event."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import httpx
import structlog

from agentsync.errors import TransportError
from agentsync.models.config import TransportConfig


class Transport(Protocol):
    """
    Opens a push channel.

    ``open(url)`` returns an async context manager. Entering it establishes the
    connection (raising on failure) and yields an async iterator of frame
    texts in arrival order. Exiting it closes the connection. The iterator
    ending means the server closed the channel.
    """

    def open(self, url: str) -> AbstractAsyncContextManager[AsyncIterator[str]]: ...


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Group Server-Sent Events lines into frames.

    Each event's ``data:`` lines are joined with newlines; comment lines and
    the ``event``/``id``/``retry`` fields are ignored. An event cut off by the
    end of the stream is discarded.
    """
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data.append(value)


class SSETransport:
    """
    :class:`Transport` reading ``text/event-stream`` responses with ``httpx``.

    Non-2xx responses and every ``httpx`` error are raised as
    :class:`~agentsync.errors.TransportError`. The read timeout is disabled;
    the channel stays open until either side closes it.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        config: TransportConfig | None = None,
    ) -> None:
        self._config = config or TransportConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._logger = structlog.get_logger("agentsync.transport")

    @asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[AsyncIterator[str]]:
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **self._config.headers,
        }
        timeout = httpx.Timeout(None, connect=self._config.connect_timeout)
        try:
            request = self._client.stream("GET", url, headers=headers, timeout=timeout)
            async with request as response:
                if response.is_error:
                    raise TransportError(url, f"HTTP {response.status_code}")
                self._logger.debug("sse_stream_opened", url=url, status=response.status_code)
                yield iter_sse_data(response.aiter_lines())
        except httpx.HTTPError as exc:
            raise TransportError(url, str(exc) or exc.__class__.__name__) from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
