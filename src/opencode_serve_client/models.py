from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRYING = "retrying"

    @classmethod
    def parse(cls, value: object) -> SessionStatus:
        if isinstance(value, dict):
            value = value.get("type")
        text = str(value or "").strip().lower()
        if text in ("retry", "retrying"):
            return cls.RETRYING
        if text == "busy":
            return cls.BUSY
        return cls.IDLE


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PartType(str, Enum):
    TEXT = "text"
    FILE = "file"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    OTHER = "other"


_FINISHED_TOOL_STATES = {"completed", "error"}


def _millis_to_datetime(value: object) -> datetime | None:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    return None


def _time_fields(data: dict[str, Any]) -> dict[str, Any]:
    time = data.get("time")
    if time is None:
        return {}
    if not isinstance(time, dict):
        raise ValueError(f"'time' must be an object, got {type(time).__name__}")
    return time


def _tool_state(raw: dict) -> str:
    state = raw.get("state")
    if isinstance(state, dict):
        state = state.get("status")
    return str(state or "")


@dataclass
class Session:
    id: str
    directory: str = ""
    title: str = ""
    project_id: str = ""
    parent_id: str | None = None
    version: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    status: SessionStatus = SessionStatus.IDLE
    share_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        time = _time_fields(data)
        share = data.get("share")
        return cls(
            id=str(data["id"]),
            directory=str(data.get("directory") or ""),
            title=str(data.get("title") or ""),
            project_id=str(data.get("projectID") or data.get("projectId") or ""),
            parent_id=data.get("parentID") or data.get("parentId"),
            version=str(data.get("version") or ""),
            created_at=_millis_to_datetime(time.get("created")),
            updated_at=_millis_to_datetime(time.get("updated")),
            status=SessionStatus.parse(data.get("status")),
            share_url=share.get("url") if isinstance(share, dict) else None,
        )


@dataclass(frozen=True)
class Part:
    type: PartType
    id: str = ""
    text: str = ""
    tool: str = ""
    raw_type: str = ""
    data: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        raw_type = str(data.get("type") or "")
        if raw_type == "text":
            part_type = PartType.TEXT
        elif raw_type in ("file", "file-reference"):
            part_type = PartType.FILE
        elif raw_type == "tool":
            finished = _tool_state(data) in _FINISHED_TOOL_STATES
            part_type = PartType.TOOL_RESULT if finished else PartType.TOOL_CALL
        elif raw_type in ("tool-call", "tool-result"):
            part_type = PartType(raw_type)
        else:
            part_type = PartType.OTHER
        return cls(
            type=part_type,
            id=str(data.get("id") or ""),
            text=str(data.get("text") or ""),
            tool=str(data.get("tool") or data.get("name") or ""),
            raw_type=raw_type,
            data=dict(data),
        )


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: Role
    created_at: datetime | None = None
    completed_at: datetime | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        time = _time_fields(data)
        return cls(
            id=str(data.get("id") or ""),
            session_id=str(data.get("sessionID") or data.get("sessionId") or ""),
            role=Role(str(data.get("role") or "assistant")),
            created_at=_millis_to_datetime(time.get("created")),
            completed_at=_millis_to_datetime(time.get("completed")),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class MessageWithParts:
    """A message and its parts, in the order the server assigned."""

    info: Message
    parts: tuple[Part, ...] = ()

    @property
    def role(self) -> Role:
        return self.info.role

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.type is PartType.TEXT)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageWithParts:
        info = data.get("info") or data.get("message")
        if not isinstance(info, dict):
            raise ValueError("message payload is missing 'info'")
        return cls(
            info=Message.from_dict(info),
            parts=tuple(Part.from_dict(p) for p in data.get("parts") or [] if isinstance(p, dict)),
        )


@dataclass(frozen=True)
class ModelReference:
    provider_id: str
    model_id: str

    def to_dict(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}


@dataclass
class SendMessageRequest:
    parts: list[dict[str, Any]] = field(default_factory=list)
    model: ModelReference | None = None
    agent: str | None = None
    message_id: str | None = None
    system: str | None = None

    @classmethod
    def text(cls, text: str, **kwargs: Any) -> SendMessageRequest:
        return cls(parts=[{"type": "text", "text": text}], **kwargs)

    def add_file(self, url: str, mime: str = "text/plain", filename: str | None = None) -> SendMessageRequest:
        part: dict[str, Any] = {"type": "file", "url": url, "mime": mime}
        if filename:
            part["filename"] = filename
        self.parts.append(part)
        return self

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"parts": list(self.parts)}
        if self.model is not None:
            body["model"] = self.model.to_dict()
        if self.agent:
            body["agent"] = self.agent
        if self.message_id:
            body["messageID"] = self.message_id
        if self.system:
            body["system"] = self.system
        return body


@dataclass
class CreateSessionRequest:
    title: str | None = None
    parent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.title:
            body["title"] = self.title
        if self.parent_id:
            body["parentID"] = self.parent_id
        return body


@dataclass
class ForkSessionRequest:
    """Fork a session, optionally only up to and including ``message_id``."""

    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"messageID": self.message_id} if self.message_id else {}


@dataclass
class RevertSessionRequest:
    message_id: str
    part_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"messageID": self.message_id}
        if self.part_id:
            body["partID"] = self.part_id
        return body


@dataclass
class SummarizeSessionRequest:
    model: ModelReference | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model.to_dict() if self.model is not None else {}


@dataclass(frozen=True)
class Todo:
    id: str
    content: str
    status: str = "pending"
    priority: str = "medium"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Todo:
        return cls(
            id=str(data.get("id") or ""),
            content=str(data["content"]),
            status=str(data.get("status") or "pending"),
            priority=str(data.get("priority") or "medium"),
        )


@dataclass(frozen=True)
class FileDiff:
    file: str
    before: str = ""
    after: str = ""
    additions: int = 0
    deletions: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileDiff:
        return cls(
            file=str(data["file"]),
            before=str(data.get("before") or ""),
            after=str(data.get("after") or ""),
            additions=int(data.get("additions") or 0),
            deletions=int(data.get("deletions") or 0),
        )


@dataclass(frozen=True)
class FileNode:
    name: str
    path: str
    absolute: str = ""
    type: str = "file"
    ignored: bool = False

    @property
    def is_directory(self) -> bool:
        return self.type == "directory"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileNode:
        return cls(
            name=str(data["name"]),
            path=str(data.get("path") or data["name"]),
            absolute=str(data.get("absolute") or ""),
            type=str(data.get("type") or "file"),
            ignored=bool(data.get("ignored", False)),
        )


@dataclass(frozen=True)
class FileContent:
    content: str
    type: str = "text"
    encoding: str | None = None
    mime_type: str | None = None
    diff: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileContent:
        return cls(
            content=str(data["content"]),
            type=str(data.get("type") or "text"),
            encoding=data.get("encoding"),
            mime_type=data.get("mimeType"),
            diff=data.get("diff"),
        )


@dataclass(frozen=True)
class FileStatus:
    """One changed file in the working tree."""

    path: str
    status: str
    added: int = 0
    removed: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileStatus:
        return cls(
            path=str(data["path"]),
            status=str(data.get("status") or "modified"),
            added=int(data.get("added") or 0),
            removed=int(data.get("removed") or 0),
        )


@dataclass
class MessageListOptions:
    limit: int | None = None
    skip: int | None = None
    before: str | None = None
    after: str | None = None
    role: str | None = None

    def validate(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.skip is not None and (self.before or self.after):
            raise ValueError(
                "Cannot use offset-based pagination (skip) with cursor-based pagination (before/after). "
                "Choose one pagination strategy."
            )
        if self.before and self.after:
            raise ValueError("Cannot specify both before and after cursors. Use one or the other.")

    def to_query(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.limit is not None:
            params["limit"] = str(self.limit)
        if self.skip is not None:
            params["skip"] = str(self.skip)
        if self.before:
            params["before"] = self.before
        if self.after:
            params["after"] = self.after
        if self.role:
            params["role"] = self.role
        return params


@dataclass(frozen=True)
class HealthStatus:
    reachable: bool
    base_url: str
    error: Exception | None = None

    def __bool__(self) -> bool:
        return self.reachable
