from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, TypeVar

import httpx

from opencode_serve_client.app_config import ClientConfig
from opencode_serve_client.cancellation import run_guarded
from opencode_serve_client.classifier import classify_status, classify_transport_error
from opencode_serve_client.event_bus import EventBus, Subscription
from opencode_serve_client.events import EventType, StreamEvent
from opencode_serve_client.errors import (
    NotFoundError,
    OpenCodeError,
    OperationCancelledError,
    OperationTimeoutError,
    ProtocolError,
    StreamDisconnectedError,
)
from opencode_serve_client.logging_config import client_logger
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
    RevertSessionRequest,
    SendMessageRequest,
    Session,
    SessionStatus,
    SummarizeSessionRequest,
    Todo,
)
from opencode_serve_client.retry_policy import RetryPolicy
from opencode_serve_client.session_registry import SessionRegistry, SessionScope
from opencode_serve_client.transport import HttpTransport, Transport, TransportError, TransportResponse

T = TypeVar("T")

_PERMISSION_RESPONSES = ("once", "always", "reject")


class OpenCodeClient:
    """Async client for a running ``opencode serve`` instance.

    One instance owns one HTTP connection pool, one event bus and one
    session registry, and may be shared by many concurrent callers.
    Idempotent reads are retried per the configured policy; creating
    sessions and sending prompts never are.

    Every blocking call takes an optional ``cancel`` event. Setting it makes
    the call raise ``OperationCancelledError`` promptly; any work already
    started on the server is left to the server. Every request also takes
    an optional ``directory`` that overrides the configured working
    directory for that call only.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._config = (config or ClientConfig()).validated()
        self._transport = transport or HttpTransport(
            self._config.base_url,
            timeout=self._config.default_timeout,
            connect_timeout=self._config.connect_timeout,
            http_client=http_client,
        )
        self._base_url = self._transport.base_url
        self._log = client_logger(self._base_url)

        if self._config.enable_retry:
            self._retry = RetryPolicy(
                max_attempts=self._config.max_retry_attempts,
                initial_delay=self._config.retry_initial_delay,
                max_delay=self._config.retry_max_delay,
                max_jitter=self._config.retry_max_jitter,
                max_elapsed=self._config.retry_max_elapsed,
            )
        else:
            self._retry = RetryPolicy.disabled()

        self._bus = EventBus(
            self._transport,
            path=self._config.event_path,
            params=self._params(),
            buffer_size=self._config.event_buffer_size,
            reconnect_attempts=self._config.reconnect_attempts,
            reconnect_delay=self._config.reconnect_delay,
        )
        self._bus.add_listener(self._track_session)
        self._registry = SessionRegistry(self.create_session, self.delete_session)
        self._sessions: dict[str, Session] = {}
        self._closed = False

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def known_sessions(self) -> dict[str, Session]:
        """Sessions seen by this client, with status following the event stream."""
        return dict(self._sessions)

    # -- Health -----------------------------------------------------------

    async def check_health(self, *, cancel: asyncio.Event | None = None) -> HealthStatus:
        """Check that the server answers. Unreachability is reported, not raised.

        Only a reachable server answering with a body that is not JSON
        raises (``ProtocolError``).
        """
        path = self._config.health_path
        try:
            response = await self._retry.execute(
                lambda: self._request("GET", path, operation="check health", cancel=cancel),
                idempotent=True,
                name="check health",
                cancel=cancel,
            )
        except OperationCancelledError:
            raise
        except OpenCodeError as ex:
            self._log.warning(f"Health check failed: {ex}")
            return HealthStatus(reachable=False, base_url=self._base_url, error=ex)

        self._decode(response, path)
        return HealthStatus(reachable=True, base_url=self._base_url)

    # -- Sessions ---------------------------------------------------------

    async def create_session(
        self,
        request: CreateSessionRequest | None = None,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Session:
        body = request.to_dict() if request is not None else {}
        response = await self._request(
            "POST", "/session", operation="create session", json=body, directory=directory, cancel=cancel
        )
        session = self._remember(self._parse(Session.from_dict, self._decode(response, "/session"), "/session"))
        self._log.info(f"Created session {session.id}")
        return session

    async def get_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> Session:
        path = f"/session/{session_id}"
        data = await self._get_json(
            path, operation="get session", resource_id=session_id, directory=directory, cancel=cancel
        )
        session = self._parse(Session.from_dict, data, path)
        cached = self._sessions.get(session.id)
        if cached is not None and session.status is SessionStatus.IDLE:
            session.status = cached.status
        return self._remember(session)

    async def list_sessions(
        self, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> list[Session]:
        data = await self._get_json("/session", operation="list sessions", directory=directory, cancel=cancel)
        sessions = self._parse_list(Session.from_dict, data, "/session")
        for session in sessions:
            self._sessions.setdefault(session.id, session)
        return sessions

    async def get_session_children(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> list[Session]:
        """Sessions forked from or spawned by ``session_id``."""
        path = f"/session/{session_id}/children"
        data = await self._get_json(
            path, operation="get session children", resource_id=session_id, directory=directory, cancel=cancel
        )
        return self._parse_list(Session.from_dict, data, path)

    async def delete_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> None:
        """Delete a session. Deleting one that is already gone succeeds."""
        path = f"/session/{session_id}"
        try:
            await self._retry.execute(
                lambda: self._request(
                    "DELETE",
                    path,
                    operation="delete session",
                    resource_id=session_id,
                    directory=directory,
                    cancel=cancel,
                ),
                idempotent=True,
                name="delete session",
                cancel=cancel,
            )
        except NotFoundError:
            self._log.debug(f"Session {session_id} already deleted")
        self._sessions.pop(session_id, None)

    async def update_session(
        self,
        session_id: str,
        title: str,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Session:
        path = f"/session/{session_id}"
        response = await self._retry.execute(
            lambda: self._request(
                "PATCH",
                path,
                operation="update session",
                json={"title": title},
                resource_id=session_id,
                directory=directory,
                cancel=cancel,
            ),
            idempotent=True,
            name="update session",
            cancel=cancel,
        )
        return self._remember(self._parse(Session.from_dict, self._decode(response, path), path))

    async def fork_session(
        self,
        session_id: str,
        request: ForkSessionRequest | None = None,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Session:
        """Copy a session, optionally only up to a given message, into a new one."""
        path = f"/session/{session_id}/fork"
        body = request.to_dict() if request is not None else {}
        response = await self._request(
            "POST",
            path,
            operation="fork session",
            json=body,
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        forked = self._remember(self._parse(Session.from_dict, self._decode(response, path), path))
        self._log.info(f"Forked session {session_id} into {forked.id}")
        return forked

    async def share_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> Session:
        """Publish a session; the returned session carries ``share_url``."""
        path = f"/session/{session_id}/share"
        response = await self._request(
            "POST", path, operation="share session", resource_id=session_id, directory=directory, cancel=cancel
        )
        return self._remember(self._parse(Session.from_dict, self._decode(response, path), path))

    async def unshare_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> None:
        path = f"/session/{session_id}/share"
        await self._retry.execute(
            lambda: self._request(
                "DELETE", path, operation="unshare session", resource_id=session_id, directory=directory, cancel=cancel
            ),
            idempotent=True,
            name="unshare session",
            cancel=cancel,
        )
        cached = self._sessions.get(session_id)
        if cached is not None:
            cached.share_url = None

    async def revert_session(
        self,
        session_id: str,
        request: RevertSessionRequest | str,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Session:
        """Undo the changes made from a message (or one of its parts) onward."""
        if isinstance(request, str):
            request = RevertSessionRequest(message_id=request)
        path = f"/session/{session_id}/revert"
        response = await self._request(
            "POST",
            path,
            operation="revert session",
            json=request.to_dict(),
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        return self._remember(self._parse(Session.from_dict, self._decode(response, path), path))

    async def unrevert_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> Session:
        path = f"/session/{session_id}/unrevert"
        response = await self._request(
            "POST", path, operation="unrevert session", resource_id=session_id, directory=directory, cancel=cancel
        )
        return self._remember(self._parse(Session.from_dict, self._decode(response, path), path))

    async def summarize_session(
        self,
        session_id: str,
        request: SummarizeSessionRequest | None = None,
        *,
        timeout: float | None = None,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Ask the server to compact the session's history with a model call."""
        path = f"/session/{session_id}/summarize"
        response = await self._request(
            "POST",
            path,
            operation="summarize session",
            json=request.to_dict() if request is not None else {},
            timeout=timeout if timeout is not None else self._config.message_timeout,
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        return bool(self._decode(response, path))

    async def abort_session(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> bool:
        path = f"/session/{session_id}/abort"
        response = await self._request(
            "POST", path, operation="abort session", resource_id=session_id, directory=directory, cancel=cancel
        )
        return bool(self._decode(response, path))

    async def get_session_status(
        self, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> dict[str, SessionStatus]:
        """Status of every session the server considers active; absent ids are idle."""
        data = await self._get_json(
            "/session/status", operation="get session status", directory=directory, cancel=cancel
        )
        if not isinstance(data, dict):
            raise ProtocolError("Expected an object of session statuses.", self._url("/session/status"))
        statuses = {str(sid): SessionStatus.parse(value) for sid, value in data.items()}
        for sid, status in statuses.items():
            if sid in self._sessions:
                self._sessions[sid].status = status
        return statuses

    async def get_session_todos(
        self, session_id: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> list[Todo]:
        path = f"/session/{session_id}/todo"
        data = await self._get_json(
            path, operation="get session todos", resource_id=session_id, directory=directory, cancel=cancel
        )
        return self._parse_list(Todo.from_dict, data, path)

    async def get_session_diff(
        self,
        session_id: str,
        message_id: str | None = None,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[FileDiff]:
        """File changes made in the session, or by one message when ``message_id`` is given."""
        path = f"/session/{session_id}/diff"
        data = await self._get_json(
            path,
            operation="get session diff",
            params={"messageID": message_id} if message_id else None,
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        return self._parse_list(FileDiff.from_dict, data, path)

    # -- Messages ---------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        request: SendMessageRequest | str,
        *,
        timeout: float | None = None,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> MessageWithParts:
        """Send a prompt and wait for the assistant's complete reply."""
        path = f"/session/{session_id}/message"
        response = await self._request(
            "POST",
            path,
            operation="send message",
            json=_as_request(request).to_dict(),
            timeout=timeout if timeout is not None else self._config.message_timeout,
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        return self._parse(MessageWithParts.from_dict, self._decode(response, path), path)

    async def prompt_non_blocking(
        self,
        session_id: str,
        request: SendMessageRequest | str,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Start a prompt and return once the server has accepted it.

        Completion is observed through ``subscribe_to_events`` or by polling
        ``list_messages``.
        """
        path = f"/session/{session_id}/prompt_async"
        await self._request(
            "POST",
            path,
            operation="prompt",
            json=_as_request(request).to_dict(),
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        if session_id in self._sessions:
            self._sessions[session_id].status = SessionStatus.BUSY
        self._log.debug(f"Prompt accepted for session {session_id}")

    async def list_messages(
        self,
        session_id: str,
        limit: int | None = None,
        *,
        options: MessageListOptions | None = None,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[MessageWithParts]:
        """Messages of a session, oldest first."""
        if options is None:
            options = MessageListOptions(limit=limit)
        elif limit is not None:
            options = replace(options, limit=limit)
        options.validate()

        path = f"/session/{session_id}/message"
        data = await self._get_json(
            path,
            operation="list messages",
            params=options.to_query(),
            resource_id=session_id,
            directory=directory,
            cancel=cancel,
        )
        return self._parse_list(MessageWithParts.from_dict, data, path)

    async def get_message(
        self,
        session_id: str,
        message_id: str,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> MessageWithParts:
        path = f"/session/{session_id}/message/{message_id}"
        data = await self._get_json(
            path, operation="get message", resource_id=message_id, directory=directory, cancel=cancel
        )
        return self._parse(MessageWithParts.from_dict, data, path)

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        response: str,
        remember: bool = False,
        *,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        if response not in _PERMISSION_RESPONSES:
            raise ValueError(f"response must be one of {', '.join(_PERMISSION_RESPONSES)}, got {response!r}")
        body: dict[str, Any] = {"response": response}
        if remember:
            body["remember"] = True
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            operation="respond to permission",
            json=body,
            resource_id=permission_id,
            directory=directory,
            cancel=cancel,
        )

    # -- Files ------------------------------------------------------------

    async def list_files(
        self, path: str = ".", *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> list[FileNode]:
        """Entries of one directory of the project, relative to its root."""
        data = await self._get_json(
            "/file", operation="list files", params={"path": path}, resource_id=path, directory=directory, cancel=cancel
        )
        return self._parse_list(FileNode.from_dict, data, "/file")

    async def read_file(
        self, path: str, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> FileContent:
        data = await self._get_json(
            "/file/content",
            operation="read file",
            params={"path": path},
            resource_id=path,
            directory=directory,
            cancel=cancel,
        )
        return self._parse(FileContent.from_dict, data, "/file/content")

    async def get_file_status(
        self, *, directory: str | None = None, cancel: asyncio.Event | None = None
    ) -> list[FileStatus]:
        """Files changed in the working tree."""
        data = await self._get_json("/file/status", operation="get file status", directory=directory, cancel=cancel)
        if isinstance(data, dict) and "files" in data:
            data = data["files"]
        return self._parse_list(FileStatus.from_dict, data, "/file/status")

    # -- Events -----------------------------------------------------------

    async def subscribe_to_events(
        self,
        session_id: str | None = None,
        *,
        buffer_size: int | None = None,
        connect_timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Subscription:
        """Register for events of one session (or all) on the shared stream.

        Returns once the stream is connected, so events the server emits
        after this call are observed. Events from before it are not replayed.
        """
        subscription = self._bus.subscribe(session_id, buffer_size=buffer_size)
        try:
            await self._bus.wait_connected(
                connect_timeout if connect_timeout is not None else self._config.default_timeout,
                cancel=cancel,
            )
        except BaseException:
            subscription.cancel()
            raise
        return subscription

    async def stream_response(
        self,
        session_id: str,
        request: SendMessageRequest | str,
        *,
        timeout: float | None = None,
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Prompt without blocking and yield the session's events until the turn ends.

        The last event yielded is ``complete`` or ``error``.
        """
        limit = timeout if timeout is not None else self._config.message_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        subscription = await self.subscribe_to_events(session_id, cancel=cancel)
        async with subscription:
            await self.prompt_non_blocking(session_id, request, directory=directory, cancel=cancel)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise OperationTimeoutError("stream response", limit)
                event = await run_guarded(
                    subscription.next(), operation="stream response", timeout=remaining, cancel=cancel
                )
                if event is None:
                    raise self._bus.terminal_error or StreamDisconnectedError(self._base_url, "event bus closed")
                yield event
                if event.type.is_terminal:
                    return

    # -- Scopes -----------------------------------------------------------

    async def create_session_scope(
        self, request: CreateSessionRequest | None = None, *, cancel: asyncio.Event | None = None
    ) -> SessionScope:
        return await self._registry.create_scoped(request, cancel=cancel)

    @asynccontextmanager
    async def scoped_session(
        self, request: CreateSessionRequest | None = None, *, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[Session]:
        """Create a session that is deleted when the block exits, however it exits."""
        scope = await self._registry.create_scoped(request, cancel=cancel)
        async with scope:
            yield scope.session

    # -- Lifecycle --------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        failures = await self._registry.release_all()
        if failures:
            self._log.warning(f"{len(failures)} session(s) could not be deleted on close")
        await self._bus.close()
        await self._transport.aclose()

    async def __aenter__(self) -> OpenCodeClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close()
        return False

    # -- Internals --------------------------------------------------------

    def _params(
        self, params: dict[str, str] | None = None, directory: str | None = None
    ) -> dict[str, str] | None:
        merged = dict(params or {})
        directory = directory if directory is not None else self._config.directory
        if directory:
            merged["directory"] = directory
        return merged or None

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _remember(self, session: Session) -> Session:
        self._sessions[session.id] = session
        return session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Any = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
        resource_id: str = "",
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TransportResponse:
        if timeout is None:
            timeout = self._config.default_timeout
        try:
            response = await run_guarded(
                self._transport.send(
                    method, path, json=json, params=self._params(params, directory), timeout=timeout
                ),
                operation=operation,
                timeout=timeout,
                cancel=cancel,
            )
        except TransportError as ex:
            raise classify_transport_error(ex, base_url=self._base_url, operation=operation) from ex

        error = classify_status(response.status_code, response.content, resource_id=resource_id or path)
        if error is not None:
            self._log.debug(f"{method} {path} -> {response.status_code}: {error}")
            raise error
        return response

    async def _get_json(
        self,
        path: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        resource_id: str = "",
        directory: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        response = await self._retry.execute(
            lambda: self._request(
                "GET",
                path,
                operation=operation,
                params=params,
                resource_id=resource_id,
                directory=directory,
                cancel=cancel,
            ),
            idempotent=True,
            name=operation,
            cancel=cancel,
        )
        return self._decode(response, path)

    def _decode(self, response: TransportResponse, path: str) -> Any:
        url = self._url(path)
        text = response.content.decode("utf-8", errors="replace").strip()
        if not text:
            raise ProtocolError("Server returned an empty response.", url)
        if "html" in response.content_type or text.startswith("<"):
            raise ProtocolError(
                "Server returned HTML instead of JSON. The endpoint may not exist or the server is misconfigured.",
                url,
            )
        try:
            return json.loads(text)
        except ValueError as ex:
            raise ProtocolError(f"Invalid JSON response: {ex}", url) from ex

    def _parse(self, factory: Callable[[dict], T], data: Any, path: str) -> T:
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}.", self._url(path))
        try:
            return factory(data)
        except (AttributeError, KeyError, TypeError, ValueError) as ex:
            raise ProtocolError(f"Unexpected response shape: {ex}", self._url(path)) from ex

    def _parse_list(self, factory: Callable[[dict], T], data: Any, path: str) -> list[T]:
        if not isinstance(data, list):
            raise ProtocolError(f"Expected a JSON array, got {type(data).__name__}.", self._url(path))
        return [self._parse(factory, item, path) for item in data]

    def _track_session(self, event: StreamEvent) -> None:
        session_id = event.session_id
        if not session_id:
            return
        if event.type is EventType.SESSION_DELETED:
            self._sessions.pop(session_id, None)
            return

        if event.type in (EventType.SESSION_CREATED, EventType.SESSION_UPDATED):
            info = event.payload.get("info") or event.payload.get("session")
            if isinstance(info, dict) and info.get("id") == session_id:
                previous = self._sessions.get(session_id)
                updated = Session.from_dict(info)
                if previous is not None and "status" not in info:
                    updated.status = previous.status
                self._sessions[session_id] = updated

        session = self._sessions.get(session_id)
        if session is None:
            return
        if event.type is EventType.CHUNK:
            session.status = SessionStatus.BUSY
        elif event.type.is_terminal:
            session.status = SessionStatus.IDLE
        elif event.type is EventType.SESSION_UPDATED and "status" in event.payload:
            session.status = SessionStatus.parse(event.payload["status"])


def _as_request(request: SendMessageRequest | str) -> SendMessageRequest:
    if isinstance(request, str):
        return SendMessageRequest.text(request)
    return request
