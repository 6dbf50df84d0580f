from opencode_serve_client.app_config import ClientConfig, load_json_config, parse_client_config
from opencode_serve_client.client import OpenCodeClient
from opencode_serve_client.errors import (
    BadRequestError,
    ConflictError,
    ConnectionFailureError,
    NotFoundError,
    OpenCodeError,
    OperationCancelledError,
    OperationTimeoutError,
    ProtocolError,
    ServerError,
    StreamDisconnectedError,
)
from opencode_serve_client.event_bus import EventBus, Subscription
from opencode_serve_client.events import EventType, StreamEvent
from opencode_serve_client.models import (
    CreateSessionRequest,
    FileContent,
    FileDiff,
    FileNode,
    FileStatus,
    ForkSessionRequest,
    HealthStatus,
    MessageListOptions,
    MessageWithParts,
    ModelReference,
    RevertSessionRequest,
    SendMessageRequest,
    Session,
    SessionStatus,
    SummarizeSessionRequest,
    Todo,
)
from opencode_serve_client.retry_policy import RetryPolicy
from opencode_serve_client.session_registry import SessionRegistry, SessionScope

__all__ = [
    "BadRequestError",
    "ClientConfig",
    "ConflictError",
    "ConnectionFailureError",
    "CreateSessionRequest",
    "EventBus",
    "EventType",
    "FileContent",
    "FileDiff",
    "FileNode",
    "FileStatus",
    "ForkSessionRequest",
    "HealthStatus",
    "MessageListOptions",
    "MessageWithParts",
    "ModelReference",
    "NotFoundError",
    "OpenCodeClient",
    "OpenCodeError",
    "OperationCancelledError",
    "OperationTimeoutError",
    "ProtocolError",
    "RetryPolicy",
    "RevertSessionRequest",
    "SendMessageRequest",
    "ServerError",
    "Session",
    "SessionRegistry",
    "SessionScope",
    "SessionStatus",
    "StreamDisconnectedError",
    "StreamEvent",
    "Subscription",
    "SummarizeSessionRequest",
    "Todo",
    "load_json_config",
    "parse_client_config",
]
