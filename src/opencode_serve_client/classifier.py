"""Maps transport outcomes and HTTP statuses onto the client error taxonomy.

This is the only place that decides which error kind a failure becomes.
"""

from __future__ import annotations

import json

from opencode_serve_client.errors import (
    BadRequestError,
    ConflictError,
    ConnectionFailureError,
    NotFoundError,
    OpenCodeError,
    OperationTimeoutError,
    ServerError,
)
from opencode_serve_client.transport import TransportError

_MAX_DETAIL_CHARS = 500


def error_detail(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        payload = json.loads(text) if text else None
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                nested = value.get("message")
                if isinstance(nested, str) and nested:
                    return nested
    if len(text) > _MAX_DETAIL_CHARS:
        return text[: _MAX_DETAIL_CHARS - 3] + "..."
    return text


def classify_status(status: int, body: bytes = b"", *, resource_id: str = "") -> OpenCodeError | None:
    """Return the error for a non-success status, or None for 1xx-3xx."""
    if status < 400:
        return None
    detail = error_detail(body)
    if status == 404:
        return NotFoundError(resource_id or "unknown", detail)
    if status == 409:
        return ConflictError(detail)
    if status < 500:
        return BadRequestError(detail or f"request rejected with status {status}", status)
    return ServerError(status, detail)


def classify_transport_error(error: TransportError, *, base_url: str, operation: str) -> OpenCodeError:
    if error.kind == "timeout":
        return OperationTimeoutError(operation)
    return ConnectionFailureError(base_url, f"{error.kind}: {error}")
