from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    SESSION_CREATED = "session-created"
    SESSION_UPDATED = "session-updated"
    SESSION_DELETED = "session-deleted"
    MESSAGE_UPDATED = "message-updated"
    CHUNK = "chunk"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR)


_SERVER_TYPES: dict[str, EventType] = {
    "session.created": EventType.SESSION_CREATED,
    "session.updated": EventType.SESSION_UPDATED,
    "session.status": EventType.SESSION_UPDATED,
    "session.deleted": EventType.SESSION_DELETED,
    "message.updated": EventType.MESSAGE_UPDATED,
    "message.part.updated": EventType.CHUNK,
    "session.idle": EventType.COMPLETE,
    "session.error": EventType.ERROR,
}

_SESSION_LIFECYCLE = {EventType.SESSION_CREATED, EventType.SESSION_UPDATED, EventType.SESSION_DELETED}


class EventDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    session_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    raw_type: str = ""

    @property
    def delta(self) -> str:
        """Incremental text carried by a chunk event, if any."""
        value = self.payload.get("delta")
        if isinstance(value, str):
            return value
        if self.raw_type == "chunk" and isinstance(self.payload.get("text"), str):
            return self.payload["text"]
        return ""

    @property
    def error_message(self) -> str:
        error = self.payload.get("error")
        if isinstance(error, dict):
            data = error.get("data")
            if isinstance(data, dict) and data.get("message"):
                return str(data["message"])
            return str(error.get("message") or error.get("name") or "")
        return str(self.payload.get("message") or error or "")


def _event_type(raw_type: str) -> EventType | None:
    if raw_type in _SERVER_TYPES:
        return _SERVER_TYPES[raw_type]
    try:
        return EventType(raw_type.replace(".", "-"))
    except ValueError:
        return None


def _first_str(*values: object) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def _session_id(frame: dict, properties: dict, event_type: EventType) -> str | None:
    info = properties.get("info") if isinstance(properties.get("info"), dict) else {}
    part = properties.get("part") if isinstance(properties.get("part"), dict) else {}
    session = properties.get("session") if isinstance(properties.get("session"), dict) else {}
    found = _first_str(
        frame.get("sessionId"),
        frame.get("sessionID"),
        properties.get("sessionID"),
        properties.get("sessionId"),
        info.get("sessionID"),
        part.get("sessionID"),
    )
    if found is None and event_type in _SESSION_LIFECYCLE:
        found = _first_str(info.get("id"), session.get("id"))
    return found


def decode_event(text: str) -> StreamEvent | None:
    """Decode one frame payload. Unknown event types decode to None."""
    try:
        frame = json.loads(text)
    except ValueError as ex:
        raise EventDecodeError(f"invalid JSON in event frame: {ex}") from ex
    if not isinstance(frame, dict):
        raise EventDecodeError("event frame is not a JSON object")

    # The global feed wraps each event as {"directory": ..., "payload": {...}}
    envelope = frame.get("payload")
    if "type" not in frame and isinstance(envelope, dict):
        frame = envelope

    raw_type = frame.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise EventDecodeError("event frame has no 'type' discriminator")

    event_type = _event_type(raw_type)
    if event_type is None:
        return None

    properties = frame.get("properties")
    if not isinstance(properties, dict):
        properties = {k: v for k, v in frame.items() if k != "type"}

    return StreamEvent(
        type=event_type,
        session_id=_session_id(frame, properties, event_type),
        payload=properties,
        raw_type=raw_type,
    )
