"""agentsync data models."""

from agentsync.models.config import (
    ReconnectConfig,
    StatusConfig,
    SyncConfig,
    TransportConfig,
)
from agentsync.models.message import (
    Message,
    MessageTime,
    MessageWithParts,
    Part,
    RetryPart,
    TextPart,
    ToolPart,
    is_queued,
    is_streaming,
    parse_part,
    pending_assistant_id,
)
from agentsync.models.session import (
    BUSY,
    IDLE,
    BusyStatus,
    ChannelKey,
    IdleStatus,
    Permission,
    RetryStatus,
    Session,
    SessionRef,
    SessionRevert,
    SessionStatus,
    SessionTime,
    Todo,
)

__all__ = [
    # Config
    "ReconnectConfig",
    "StatusConfig",
    "SyncConfig",
    "TransportConfig",
    # Messages and parts
    "Part",
    "TextPart",
    "ToolPart",
    "RetryPart",
    "parse_part",
    "Message",
    "MessageTime",
    "MessageWithParts",
    "is_streaming",
    "is_queued",
    "pending_assistant_id",
    # Sessions
    "ChannelKey",
    "Session",
    "SessionRef",
    "SessionTime",
    "SessionRevert",
    "Permission",
    "Todo",
    # Status
    "SessionStatus",
    "IdleStatus",
    "BusyStatus",
    "RetryStatus",
    "IDLE",
    "BUSY",
]
