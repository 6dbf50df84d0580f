from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from opencode_serve_client.errors import NotFoundError, OpenCodeError
from opencode_serve_client.models import CreateSessionRequest, Session


class SessionScope:
    """Client-side handle that deletes its session exactly once on release.

    Use as ``async with``; release also runs on error and cancellation.
    Scopes from ``SessionRegistry.attach`` do not own the session and never
    delete it.
    """

    def __init__(self, registry: SessionRegistry, session_id: str, *, owned: bool, session: Session | None = None):
        self._registry = registry
        self._session_id = session_id
        self._owned = owned
        self._released = False
        self.session = session

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def owned(self) -> bool:
        return self._owned

    @property
    def released(self) -> bool:
        return self._released

    def _consume(self) -> bool:
        # No await between the check and the set: first caller wins.
        if self._released:
            return False
        self._released = True
        return True

    async def release(self) -> OpenCodeError | None:
        """Release the scope. Returns a non-fatal cleanup error, if any."""
        return await self._registry.release(self)

    async def __aenter__(self) -> SessionScope:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.release()
        return False

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"SessionScope({self._session_id!r}, owned={self._owned}, {state})"


class SessionRegistry:
    def __init__(
        self,
        create_session: Callable[..., Awaitable[Session]],
        delete_session: Callable[[str], Awaitable[None]],
    ):
        self._create_session = create_session
        self._delete_session = delete_session
        self._owned: dict[str, SessionScope] = {}

    @property
    def live_sessions(self) -> list[str]:
        return list(self._owned)

    async def create_scoped(
        self,
        request: CreateSessionRequest | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SessionScope:
        """Create a session owned by the returned scope.

        *create_session* is called as ``create_session(request, cancel=cancel)``.
        """
        session = await self._create_session(request, cancel=cancel)
        scope = SessionScope(self, session.id, owned=True, session=session)
        self._owned[session.id] = scope
        logger.debug(f"Session scope opened: {session.id}")
        return scope

    def attach(self, session_id: str) -> SessionScope:
        return SessionScope(self, session_id, owned=False)

    async def release(self, scope: SessionScope) -> OpenCodeError | None:
        if not scope._consume():
            return None
        if self._owned.get(scope.session_id) is scope:
            del self._owned[scope.session_id]
        if not scope.owned:
            return None

        try:
            await asyncio.shield(self._delete_session(scope.session_id))
        except NotFoundError:
            logger.debug(f"Session {scope.session_id} was already gone at scope release")
            return None
        except OpenCodeError as ex:
            logger.warning(f"Failed to delete session {scope.session_id} on scope release: {ex}")
            return ex
        logger.debug(f"Session scope released: {scope.session_id}")
        return None

    async def release_all(self) -> list[OpenCodeError]:
        scopes = list(self._owned.values())
        results = await asyncio.gather(*(self.release(scope) for scope in scopes))
        return [r for r in results if r is not None]
