"""Decodes push frames and routes them, in arrival order, to an event sink."""

from __future__ import annotations

import structlog

from agentsync.errors import FrameDecodeError
from agentsync.events.payloads import Event, decode_frame
from agentsync.events.sink import DropCounter, EventSink
from agentsync.models.session import ChannelKey


class EventDispatcher:
    """
    Turns raw frame text into typed events and hands each to the sink.

    ``dispatch`` is synchronous and never raises: undecodable or mis-shaped
    frames are logged and counted, frames of unknown type are ignored, and a
    sink failure is logged without closing the channel. Frames are never
    batched or reordered.
    """

    def __init__(self, sink: EventSink, drops: DropCounter | None = None) -> None:
        self._sink = sink
        self._drops = drops if drops is not None else DropCounter()
        self._logger = structlog.get_logger("agentsync.dispatcher")

    @property
    def drops(self) -> DropCounter:
        return self._drops

    def dispatch(self, channel: ChannelKey, frame: str | bytes) -> Event | None:
        """
        Decode one frame and deliver it.

        Returns:
            The delivered event, or ``None`` when the frame was dropped or ignored.
        """
        try:
            event = decode_frame(frame)
        except FrameDecodeError as exc:
            self._drops.record(exc.reason)
            self._logger.warning(
                "frame_dropped",
                channel=str(channel),
                reason=exc.reason,
                event_type=exc.event_type,
                error=exc.detail,
            )
            return None

        if event is None:
            self._drops.record("unknown_type")
            self._logger.debug("frame_ignored", channel=str(channel), reason="unknown_type")
            return None

        try:
            self._sink.handle(channel, event)
        except Exception as exc:
            self._drops.record("sink_error")
            self._logger.error(
                "frame_dropped",
                channel=str(channel),
                reason="sink_error",
                event_type=event.raw_type,
                error=str(exc),
            )
            return None
        return event
