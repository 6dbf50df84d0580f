from __future__ import annotations


class OpenCodeError(Exception):
    """Base class for every error surfaced to callers of the client."""

    retryable = False
    kind = "error"


class NotFoundError(OpenCodeError):
    kind = "not_found"

    def __init__(self, resource_id: str, detail: str = ""):
        message = f"Resource not found: {resource_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.resource_id = resource_id
        self.detail = detail


class ConflictError(OpenCodeError):
    kind = "conflict"

    def __init__(self, detail: str = ""):
        super().__init__(f"Conflict: {detail}" if detail else "Conflict")
        self.detail = detail


class BadRequestError(OpenCodeError):
    kind = "bad_request"

    def __init__(self, detail: str, status: int = 400):
        super().__init__(f"Bad request ({status}): {detail}")
        self.detail = detail
        self.status = status


class ServerError(OpenCodeError):
    kind = "server_error"
    retryable = True

    def __init__(self, status: int, detail: str = ""):
        message = f"Server error ({status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status
        self.detail = detail


class ConnectionFailureError(OpenCodeError):
    kind = "connection_failure"
    retryable = True

    def __init__(self, base_url: str, reason: str = ""):
        message = f"Failed to connect to OpenCode server at {base_url}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.base_url = base_url
        self.reason = reason


class OperationTimeoutError(OpenCodeError):
    kind = "timeout"
    retryable = True

    def __init__(self, operation: str, seconds: float | None = None):
        message = f"Operation '{operation}' timed out"
        if seconds is not None:
            message = f"{message} after {seconds:g}s"
        super().__init__(message)
        self.operation = operation
        self.seconds = seconds


class OperationCancelledError(OpenCodeError):
    kind = "cancelled"

    def __init__(self, operation: str):
        super().__init__(f"Operation '{operation}' was cancelled")
        self.operation = operation


class StreamDisconnectedError(OpenCodeError):
    kind = "stream_disconnected"

    def __init__(self, base_url: str, reason: str = ""):
        message = f"Event stream from {base_url} disconnected"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.base_url = base_url
        self.reason = reason


class ProtocolError(OpenCodeError):
    """A successful status whose body is not what the operation expects."""

    kind = "protocol"

    def __init__(self, detail: str, url: str = ""):
        super().__init__(f"{detail} URL: {url}" if url else detail)
        self.detail = detail
        self.url = url
