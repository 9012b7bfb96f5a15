"""One live push connection: state machine plus bounded outbound buffer.

States move strictly forward::

    CONNECTING -> AUTHENTICATED -> CLOSING -> CLOSED

Only AUTHENTICATED connections accept outbound messages.  Messages are queued
and written by a per-connection writer task so a slow client never blocks the
caller; the queue is capped in bytes and overflowing it closes the connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from calsync.errors import BackpressureError, PushChannelError

logger = logging.getLogger(__name__)

WS_CLOSE_NORMAL = 1000
WS_CLOSE_GOING_AWAY = 1001
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011
WS_CLOSE_TRY_AGAIN_LATER = 1013


class ConnectionState(enum.StrEnum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSING = "closing"
    CLOSED = "closed"


class Transport(Protocol):
    """The subset of ``starlette.websockets.WebSocket`` a connection writes to."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class LiveConnection:
    """A single client connection owned by the ``ConnectionRegistry``."""

    def __init__(
        self,
        transport: Transport,
        *,
        path: str = "/api/ws",
        max_buffered_bytes: int = 1_048_576,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection_id = uuid.uuid4().hex
        self.path = path
        self.user_id: int | None = None
        self.state = ConnectionState.CONNECTING
        self.close_error: PushChannelError | None = None
        self._transport = transport
        self._max_buffered_bytes = max_buffered_bytes
        self._clock = clock
        self.connected_at = clock()
        self.last_ping_sent_at: float | None = None
        self.last_pong_received_at: float | None = None

        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        self._buffered_bytes = 0
        self._writer: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._on_closed: Callable[[LiveConnection], None] | None = None

    def __repr__(self) -> str:
        return (
            f"LiveConnection(id={self.connection_id}, user_id={self.user_id}, "
            f"state={self.state.value})"
        )

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def set_close_callback(self, callback: Callable[[LiveConnection], None] | None) -> None:
        """Register the hook run once when the connection starts closing."""
        self._on_closed = callback

    # -- lifecycle ----------------------------------------------------------

    def authenticate(self, user_id: int) -> None:
        """Bind the connection to *user_id* and start its writer task."""
        if self.state != ConnectionState.CONNECTING:
            raise PushChannelError(f"Cannot authenticate a connection in state {self.state}")
        self.user_id = user_id
        self.state = ConnectionState.AUTHENTICATED
        self.last_pong_received_at = self._clock()
        self._writer = asyncio.get_running_loop().create_task(
            self._write_loop(), name=f"push-writer-{self.connection_id}"
        )

    def abort(self, code: int, reason: str, *, error: PushChannelError | None = None) -> None:
        """Start closing without waiting; usable from synchronous callers."""
        if not self._begin_close(error):
            return
        self._close_task = asyncio.get_running_loop().create_task(self._shutdown(code, reason))

    async def close(
        self,
        code: int = WS_CLOSE_NORMAL,
        reason: str = "",
        *,
        error: PushChannelError | None = None,
    ) -> None:
        """Close the connection and wait for the transport to be released."""
        if not self._begin_close(error):
            if self._close_task is not None and self._close_task is not asyncio.current_task():
                await asyncio.shield(self._close_task)
            return
        await self._shutdown(code, reason)

    def _begin_close(self, error: PushChannelError | None) -> bool:
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return False
        self.state = ConnectionState.CLOSING
        self.close_error = error
        callback, self._on_closed = self._on_closed, None
        if callback is not None:
            callback(self)
        return True

    async def _shutdown(self, code: int, reason: str) -> None:
        writer = self._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        try:
            await self._transport.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("Transport for %s already closed: %s", self.connection_id, exc)
        self.state = ConnectionState.CLOSED
        self._drain()

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._buffered_bytes = 0

    # -- outbound -----------------------------------------------------------

    def enqueue(self, payload: str) -> bool:
        """Queue *payload* for delivery.

        Returns False when the connection is not open.  Raises
        ``BackpressureError`` (after starting to close the connection with code
        1013) when the payload would push the buffer past its byte cap.
        """
        if not self.is_open:
            return False
        size = len(payload.encode("utf-8"))
        if self._buffered_bytes + size > self._max_buffered_bytes:
            error = BackpressureError(
                f"Connection {self.connection_id} exceeded {self._max_buffered_bytes} "
                "buffered bytes"
            )
            logger.warning("%s; closing", error)
            self.abort(WS_CLOSE_TRY_AGAIN_LATER, "Too much unsent data", error=error)
            raise error
        self._queue.put_nowait((payload, size))
        self._buffered_bytes += size
        return True

    async def _write_loop(self) -> None:
        while True:
            payload, size = await self._queue.get()
            try:
                await self._transport.send_text(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.info("Send to %s failed, closing: %s", self.connection_id, exc)
                self.abort(WS_CLOSE_INTERNAL_ERROR, "Send failed")
                return
            finally:
                self._buffered_bytes = max(0, self._buffered_bytes - size)

    # -- liveness -----------------------------------------------------------

    def mark_alive(self) -> None:
        """Record inbound traffic.

        Any text or binary frame answers an outstanding heartbeat ping, not only
        ``pong``.  WebSocket control frames never reach the application, so a
        client that only answers protocol-level pings is still timed out.
        """
        self.last_pong_received_at = self._clock()

    def mark_ping_sent(self) -> None:
        self.last_ping_sent_at = self._clock()

    @property
    def ping_outstanding(self) -> bool:
        if self.last_ping_sent_at is None:
            return False
        return self.last_pong_received_at is None or (
            self.last_pong_received_at < self.last_ping_sent_at
        )

    def ping_expired(self, now: float, timeout_s: float) -> bool:
        """True when the last ping has gone unanswered for longer than *timeout_s*."""
        if not self.ping_outstanding or self.last_ping_sent_at is None:
            return False
        return now - self.last_ping_sent_at > timeout_s
