from __future__ import annotations

import asyncio
import random
import threading
from collections import deque
from collections.abc import Callable
from enum import Enum

from opencode_serve_client.classifier import classify_status, classify_transport_error
from opencode_serve_client.errors import (
    OpenCodeError,
    OperationCancelledError,
    OperationTimeoutError,
    StreamDisconnectedError,
)
from opencode_serve_client.events import EventDecodeError, EventType, StreamEvent, decode_event
from opencode_serve_client.logging_config import client_logger
from opencode_serve_client.sse import SseDecoder
from opencode_serve_client.transport import Transport, TransportError

EventListener = Callable[[StreamEvent], None]


class BusState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class Subscription:
    """A live registration for events of one session, or of all sessions.

    Iterate it with ``async for``. Iteration ends when the subscription is
    cancelled or the bus closes. The buffer is bounded: when it is full the
    oldest undelivered event is dropped and ``lossy`` becomes true. ``gaps``
    counts stream disconnects the subscription lived through; after either
    signal callers should re-fetch authoritative state.
    """

    def __init__(self, bus: EventBus, session_id: str | None, buffer_size: int):
        self.session_id = session_id
        self._bus = bus
        self._capacity = max(1, buffer_size)
        self._buffer: deque[StreamEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self._cancelled = False
        self.dropped = 0
        self.gaps = 0

    @property
    def lossy(self) -> bool:
        return self.dropped > 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def matches(self, event: StreamEvent) -> bool:
        return self.session_id is None or event.session_id == self.session_id

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._bus._unsubscribe(self)
        self._buffer.clear()
        self._close()

    def _deliver(self, event: StreamEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self._capacity:
            self._buffer.popleft()
            self.dropped += 1
            if self.dropped == 1:
                self._bus._log.warning(
                    f"Subscription for {self.session_id or '*'} is lossy: buffer of {self._capacity} full"
                )
        self._buffer.append(event)
        self._ready.set()

    def _mark_gap(self) -> None:
        self.gaps += 1

    def _close(self) -> None:
        self._closed = True
        self._ready.set()

    def __aiter__(self) -> Subscription:
        return self

    async def next(self) -> StreamEvent | None:
        """Wait for the next event. Returns None once closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    async def __anext__(self) -> StreamEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.cancel()
        return False


class EventBus:
    """Owns the single event-stream connection and fans events out.

    One decode loop reads frames and pushes each event into the bounded
    buffer of every matching subscription without ever waiting on a
    subscriber. The subscriber table is guarded by one lock that is never
    held across an await.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        path: str = "/event",
        params: dict[str, str] | None = None,
        buffer_size: int = 256,
        reconnect_attempts: int = 1,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ):
        self._transport = transport
        self._log = client_logger(transport.base_url)
        self._path = path
        self._params = params
        self._buffer_size = max(1, buffer_size)
        self._reconnect_attempts = max(0, reconnect_attempts)
        self._reconnect_delay = max(0.0, reconnect_delay)
        self._reconnect_max_delay = reconnect_max_delay

        self._lock = threading.Lock()
        self._subscriptions: set[Subscription] = set()
        self._listeners: list[EventListener] = []
        self._state = BusState.IDLE
        self._task: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._closed = asyncio.Event()
        self._terminal_error: StreamDisconnectedError | None = None
        self._failures = 0
        self._epoch = 0

    @property
    def state(self) -> BusState:
        return self._state

    @property
    def epoch(self) -> int:
        """Number of successful connections so far."""
        return self._epoch

    @property
    def terminal_error(self) -> StreamDisconnectedError | None:
        return self._terminal_error

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_listener(self, listener: EventListener) -> None:
        """Register a synchronous callback invoked for every decoded event."""
        self._listeners.append(listener)

    def subscribe(self, session_id: str | None = None, *, buffer_size: int | None = None) -> Subscription:
        if self._state is BusState.CLOSED:
            raise self._terminal_error or StreamDisconnectedError(self._transport.base_url, "event bus is closed")
        subscription = Subscription(self, session_id, buffer_size or self._buffer_size)
        with self._lock:
            self._subscriptions.add(subscription)
        self._ensure_running()
        return subscription

    async def wait_connected(self, timeout: float | None = None, *, cancel: asyncio.Event | None = None) -> None:
        """Wait until the stream is connected.

        Raises OperationTimeoutError on the deadline, OperationCancelledError
        when *cancel* is set and StreamDisconnectedError if the bus closes.
        """
        if self._state is BusState.CONNECTED:
            return
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError("connect event stream")
        if self._state is BusState.CLOSED:
            raise self._terminal_error or StreamDisconnectedError(self._transport.base_url, "event bus is closed")
        self._ensure_running()

        connected = asyncio.ensure_future(self._connected.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        waiters = {connected, closed}
        cancelled = None
        if cancel is not None:
            cancelled = asyncio.ensure_future(cancel.wait())
            waiters.add(cancelled)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if connected in done:
            return
        if cancelled is not None and cancelled in done:
            raise OperationCancelledError("connect event stream")
        if closed in done:
            raise self._terminal_error or StreamDisconnectedError(self._transport.base_url, "event bus is closed")
        raise OperationTimeoutError("connect event stream", timeout)

    async def close(self) -> None:
        if self._state is BusState.CLOSED and self._task is None:
            return
        self._state = BusState.CLOSED
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._close()
        self._connected.clear()
        self._closed.set()
        self._log.debug("Event bus closed")

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

    def _ensure_running(self) -> None:
        if self._task is None and self._state is BusState.IDLE:
            self._state = BusState.CONNECTING
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        base_url = self._transport.base_url
        while True:
            self._state = BusState.CONNECTING
            try:
                await self._consume()
                error: OpenCodeError = StreamDisconnectedError(base_url, "server closed the event stream")
            except TransportError as ex:
                error = classify_transport_error(ex, base_url=base_url, operation="event stream")
            except OpenCodeError as ex:
                error = ex
            except Exception as ex:
                self._log.exception(f"Unexpected event stream failure: {ex}")
                error = StreamDisconnectedError(base_url, repr(ex))

            self._connected.clear()
            if self._state is BusState.CLOSED:
                return
            self._state = BusState.DISCONNECTED
            with self._lock:
                live = list(self._subscriptions)
            for subscription in live:
                subscription._mark_gap()

            if self._failures >= self._reconnect_attempts:
                self._fail(error)
                return
            self._failures += 1
            delay = min(self._reconnect_delay * 2 ** (self._failures - 1), self._reconnect_max_delay)
            delay += random.uniform(0, self._reconnect_delay * 0.1)
            self._log.warning(
                f"Event stream disconnected ({error}). Reconnecting in {delay:.2f}s "
                f"(attempt {self._failures}/{self._reconnect_attempts})..."
            )
            await asyncio.sleep(delay)

    async def _consume(self) -> None:
        async with self._transport.open_stream(self._path, params=self._params) as stream:
            if stream.status_code >= 400:
                body = await stream.aread()
                raise classify_status(stream.status_code, body, resource_id=self._path)

            self._epoch += 1
            self._failures = 0
            self._state = BusState.CONNECTED
            self._connected.set()
            self._log.info(f"Event stream connected to {self._transport.base_url}{self._path} (epoch {self._epoch})")

            decoder = SseDecoder()
            async for line in stream.aiter_lines():
                data = decoder.feed(line)
                if data is not None:
                    self._publish(data)
            tail = decoder.flush()
            if tail is not None:
                self._publish(tail)

    def _publish(self, data: str) -> None:
        try:
            event = decode_event(data)
        except EventDecodeError as ex:
            self._log.warning(f"Skipping malformed event frame: {ex}")
            return
        if event is None:
            self._log.debug(f"Ignoring unhandled event frame: {data[:120]}")
            return

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as ex:
                self._log.warning(f"Event listener failed on {event.type.value}: {ex}")

        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
        for subscription in targets:
            subscription._deliver(event)

    def _fail(self, error: OpenCodeError) -> None:
        if isinstance(error, StreamDisconnectedError):
            terminal_error = error
        else:
            terminal_error = StreamDisconnectedError(self._transport.base_url, str(error))
        terminal_error.__cause__ = error if error is not terminal_error else None
        self._terminal_error = terminal_error
        self._state = BusState.CLOSED
        self._task = None
        self._log.error(f"Event stream closed after reconnect attempts were exhausted: {error}")

        terminal = StreamEvent(
            type=EventType.ERROR,
            payload={"error": {"name": error.kind, "message": str(error)}},
            raw_type="stream.disconnected",
        )
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._deliver(terminal)
            subscription._close()
        self._closed.set()
