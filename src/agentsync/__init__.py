"""
agentsync: real-time state synchronization for remote coding-agent sessions.

Primary entry point::

    from agentsync import SyncEngine

    async with SyncEngine.open("http://localhost:4096", "/work/repo") as engine:
        engine.subscribe_messages("ses_1", print)
        ...
"""

from agentsync.cache import QueryKey, QueryKind, SyncCache
from agentsync.connection import (
    Backoff,
    CancellationToken,
    Channel,
    ChannelSubscription,
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)
from agentsync.dispatcher import EventDispatcher
from agentsync.engine import SyncEngine
from agentsync.errors import (
    AgentSyncError,
    EngineClosedError,
    FrameDecodeError,
    NotConnectedError,
    TransportError,
)
from agentsync.events import (
    Event,
    EventKind,
    EventSink,
    Notice,
    NotificationBus,
    decode_frame,
)
from agentsync.events.sink import DropCounter
from agentsync.models import (
    ChannelKey,
    Message,
    MessageWithParts,
    Part,
    Permission,
    RetryPart,
    RetryStatus,
    Session,
    SessionStatus,
    SyncConfig,
    TextPart,
    ToolPart,
    is_queued,
    is_streaming,
    pending_assistant_id,
)
from agentsync.permissions import PermissionRegistry
from agentsync.reconciler import Reconciler
from agentsync.service import HttpSessionDataService, ServiceFetcher, SessionDataService
from agentsync.status import SessionStatusProjector, SessionStatusStore
from agentsync.transport import SSETransport, Transport

__version__ = "0.1.0"

__all__ = [
    # Core
    "SyncEngine",
    "SyncConfig",
    # Connection
    "Backoff",
    "CancellationToken",
    "Channel",
    "ChannelKey",
    "ChannelSubscription",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "SSETransport",
    "Transport",
    # Events
    "DropCounter",
    "Event",
    "EventDispatcher",
    "EventKind",
    "EventSink",
    "Notice",
    "NotificationBus",
    "decode_frame",
    # State
    "PermissionRegistry",
    "QueryKey",
    "QueryKind",
    "Reconciler",
    "SessionStatusProjector",
    "SessionStatusStore",
    "SyncCache",
    # Data service
    "HttpSessionDataService",
    "ServiceFetcher",
    "SessionDataService",
    # Models
    "Message",
    "MessageWithParts",
    "Part",
    "Permission",
    "RetryPart",
    "RetryStatus",
    "Session",
    "SessionStatus",
    "TextPart",
    "ToolPart",
    "is_queued",
    "is_streaming",
    "pending_assistant_id",
    # Errors
    "AgentSyncError",
    "EngineClosedError",
    "FrameDecodeError",
    "NotConnectedError",
    "TransportError",
]
