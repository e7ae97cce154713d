"""The single entry point typed events are delivered through, and drop accounting."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from agentsync.events.payloads import Event
    from agentsync.models.session import ChannelKey


class EventSink(Protocol):
    """Anything that consumes decoded events for a channel, one at a time, in order."""

    def handle(self, channel: ChannelKey, event: Event) -> None: ...


class DropCounter:
    """
    Counts events dropped without being applied, by reason.

    Reasons used by the engine: ``decode_error``, ``invalid_shape``,
    ``unknown_type``, ``missing_message_list``, ``missing_parent_message``,
    ``sink_error``.
    """

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()

    def record(self, reason: str) -> None:
        self._counts[reason] += 1

    def count(self, reason: str) -> int:
        return self._counts[reason]

    def snapshot(self) -> dict[str, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return sum(self._counts.values())
