from __future__ import annotations

import ssl
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from opencode_serve_client.logging_config import client_logger

_JSON_HEADERS = {"Accept": "application/json"}
_SSE_HEADERS = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
)


class TransportError(Exception):
    """Raw network failure. Kinds: connection, dns, tls, timeout, protocol."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


@runtime_checkable
class ByteStream(Protocol):
    status_code: int

    def aiter_lines(self) -> AsyncIterator[str]: ...

    async def aread(self) -> bytes: ...


@runtime_checkable
class Transport(Protocol):
    base_url: str

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> TransportResponse: ...

    def open_stream(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
    ) -> Any: ...

    async def aclose(self) -> None: ...


def to_transport_error(ex: httpx.HTTPError) -> TransportError:
    if isinstance(ex, httpx.TimeoutException):
        return TransportError("timeout", str(ex) or type(ex).__name__)
    if isinstance(ex, httpx.ConnectError):
        text = str(ex)
        if isinstance(ex.__cause__, ssl.SSLError) or "SSL" in text or "CERTIFICATE" in text.upper():
            return TransportError("tls", text)
        if any(marker in text.lower() for marker in _DNS_MARKERS):
            return TransportError("dns", text)
        return TransportError("connection", text or "connection refused")
    if isinstance(ex, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransportError("connection", str(ex) or type(ex).__name__)
    return TransportError("protocol", str(ex) or type(ex).__name__)


class _HttpxByteStream:
    def __init__(self, response: httpx.Response):
        self._response = response
        self.status_code = response.status_code

    async def aiter_lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.HTTPError as ex:
            raise to_transport_error(ex) from ex

    async def aread(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.HTTPError as ex:
            raise to_transport_error(ex) from ex


class HttpTransport:
    """Thin httpx wrapper: pooled request/response calls plus one streamed GET.

    Never retries and never interprets status codes.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._log = client_logger(self.base_url)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(connect_timeout, timeout)),
            headers=_JSON_HEADERS,
        )

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        request_timeout = (
            httpx.Timeout(timeout, connect=min(self._connect_timeout, timeout))
            if timeout is not None
            else httpx.USE_CLIENT_DEFAULT
        )
        self._log.debug(f"{method} {path}")
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                headers=headers,
                timeout=request_timeout,
            )
        except httpx.HTTPError as ex:
            raise to_transport_error(ex) from ex
        return TransportResponse(
            status_code=response.status_code,
            content=response.content,
            headers={k.lower(): v for k, v in response.headers.items()},
        )

    @asynccontextmanager
    async def open_stream(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[_HttpxByteStream]:
        # Reads may idle indefinitely between events.
        stream_timeout = httpx.Timeout(self._timeout, connect=self._connect_timeout, read=None)
        self._log.debug(f"GET (SSE) {path}")
        try:
            async with self._client.stream(
                "GET",
                path,
                params=params,
                headers=_SSE_HEADERS,
                timeout=stream_timeout,
            ) as response:
                yield _HttpxByteStream(response)
        except httpx.HTTPError as ex:
            raise to_transport_error(ex) from ex

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
