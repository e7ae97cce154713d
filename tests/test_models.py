"""Tests for message, session and config models."""

from __future__ import annotations

import pytest
from pydantic import TypeAdapter, ValidationError

from agentsync.models.config import ReconnectConfig, SyncConfig
from agentsync.models.message import (
    Message,
    MessageWithParts,
    RetryPart,
    TextPart,
    is_queued,
    is_streaming,
    parse_part,
    pending_assistant_id,
)
from agentsync.models.session import ChannelKey, RetryStatus, SessionStatus
from tests.conftest import message_info, part_data


def _message(msg_id: str, role: str = "user", completed: int | None = None) -> MessageWithParts:
    info = Message.model_validate(message_info(msg_id, role=role, completed=completed))
    return MessageWithParts(info=info)


class TestParts:
    def test_text_content_joins_text_parts(self):
        message = _message("m1", role="assistant")
        message.parts = [
            parse_part(part_data("p1", "m1", text="Hello, ")),
            parse_part(part_data("p2", "m1", part_type="tool", tool="bash")),
            parse_part(part_data("p3", "m1", text="world")),
        ]
        assert message.text_content() == "Hello, world"
        assert message.part_index("p3") == 2
        assert message.part_index("missing") == -1

    def test_parse_part_passes_models_through(self):
        part = TextPart(id="p1", session_id="ses_1", message_id="m1", text="x")
        assert parse_part(part) is part

    def test_retry_error_message(self):
        part = parse_part(
            part_data("p1", "m1", part_type="retry", attempt=2, error={"data": {"message": "Overloaded"}})
        )
        assert isinstance(part, RetryPart)
        assert part.error_message == "Overloaded"

    def test_retry_error_message_fallback(self):
        part = parse_part(part_data("p1", "m1", part_type="retry", attempt=1))
        assert part.error_message == "Retrying..."


class TestPredicates:
    def test_streaming_only_for_incomplete_assistant(self):
        assert is_streaming(_message("m1", role="assistant"))
        assert not is_streaming(_message("m1", role="assistant", completed=200))
        assert not is_streaming(_message("m1", role="user"))

    def test_pending_assistant_is_latest_streaming(self):
        messages = [
            _message("m1", role="user"),
            _message("m2", role="assistant", completed=200),
            _message("m3", role="user"),
            _message("m4", role="assistant"),
        ]
        assert pending_assistant_id(messages) == "m4"
        assert pending_assistant_id(messages[:3]) is None

    def test_queued_user_messages_follow_pending_assistant(self):
        """Only user messages newer than the streaming reply are queued."""
        messages = [_message("m1"), _message("m2", role="assistant"), _message("m3")]
        pending = pending_assistant_id(messages)
        assert not is_queued(messages[0], pending)
        assert not is_queued(messages[1], pending)
        assert is_queued(messages[2], pending)
        assert not is_queued(messages[2], None)


class TestChannelKey:
    def test_event_url_with_directory(self):
        key = ChannelKey("http://agent.test/", "/work/my repo")
        assert key.event_url() == "http://agent.test/event?directory=%2Fwork%2Fmy+repo"

    def test_event_url_without_directory(self):
        assert ChannelKey("http://agent.test").event_url("stream") == "http://agent.test/stream"

    def test_keys_compare_by_value(self):
        assert ChannelKey("http://a", "/x") == ChannelKey("http://a", "/x")
        assert ChannelKey("http://a", "/x") != ChannelKey("http://a", "/y")
        assert str(ChannelKey("http://a")) == "http://a#"


class TestSessionStatus:
    def test_discriminated_union(self):
        adapter = TypeAdapter(SessionStatus)
        status = adapter.validate_python({"type": "retry", "attempt": 3, "message": "x", "next": 10})
        assert isinstance(status, RetryStatus)
        assert adapter.validate_python({"type": "busy"}).type == "busy"

    def test_remaining_never_negative(self):
        status = RetryStatus(attempt=1, message="x", next=1_000)
        assert status.remaining_ms(400) == 600
        assert status.remaining_ms(5_000) == 0


class TestConfig:
    def test_defaults(self):
        config = SyncConfig.default()
        assert config.reconnect.initial_delay_ms == 1_000
        assert config.reconnect.multiplier == 2.0
        assert config.reconnect.max_delay_ms == 30_000
        assert config.status.retry_countdown_ms == 5_000
        assert config.optimistic_prefix == "optimistic_"

    def test_initial_delay_above_cap_rejected(self):
        with pytest.raises(ValidationError):
            ReconnectConfig(initial_delay_ms=5_000, max_delay_ms=1_000)

    def test_empty_optimistic_prefix_rejected(self):
        with pytest.raises(ValidationError):
            SyncConfig(optimistic_prefix="")
