"""Per-user registry of live push connections, with a heartbeat sweep.

The registry is owned by the single asyncio event loop serving the app; all
mutations are synchronous, so no partial update of a user's connection set
is ever visible to another task.  It is created explicitly and handed to the
broadcaster and the push channel (tests build their own instances).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable

from calsync.core.metrics import CalsyncMetrics, get_metrics
from calsync.errors import HeartbeatTimeoutError, PushChannelError
from calsync.realtime.connection import WS_CLOSE_GOING_AWAY, LiveConnection
from calsync.realtime.messages import Ping, encode_message

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks ``LiveConnection`` objects by owning user id."""

    def __init__(
        self,
        *,
        heartbeat_interval_s: float = 30.0,
        heartbeat_timeout_s: float = 10.0,
        metrics: CalsyncMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._buckets: dict[int, set[LiveConnection]] = {}
        self._heartbeat_interval_s = heartbeat_interval_s
        self._heartbeat_timeout_s = heartbeat_timeout_s
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._buckets

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(self, user_id: int, connection: LiveConnection) -> None:
        """Add *connection* to the user's bucket.

        The connection unregisters itself as soon as it starts closing.
        """
        bucket = self._buckets.setdefault(user_id, set())
        if connection in bucket:
            return
        bucket.add(connection)
        connection.set_close_callback(functools.partial(self._on_connection_closed, user_id))
        self._metrics.connection_registered()
        logger.info(
            "Registered push connection %s for user %s (%d live)",
            connection.connection_id,
            user_id,
            len(bucket),
        )

    def unregister(self, user_id: int, connection: LiveConnection) -> bool:
        """Remove *connection*; an emptied bucket is dropped.  Returns True if removed."""
        bucket = self._buckets.get(user_id)
        if bucket is None or connection not in bucket:
            return False
        bucket.discard(connection)
        if not bucket:
            del self._buckets[user_id]
        connection.set_close_callback(None)
        self._metrics.connection_unregistered()
        logger.info(
            "Unregistered push connection %s for user %s", connection.connection_id, user_id
        )
        return True

    def _on_connection_closed(self, user_id: int, connection: LiveConnection) -> None:
        self.unregister(user_id, connection)

    def connections(self, user_id: int) -> list[LiveConnection]:
        """Return the user's open connections, pruning any found closed."""
        bucket = self._buckets.get(user_id)
        if not bucket:
            return []
        live: list[LiveConnection] = []
        for connection in list(bucket):
            if connection.is_open:
                live.append(connection)
            else:
                self.unregister(user_id, connection)
        return live

    def for_each_connection(self, user_id: int, fn: Callable[[LiveConnection], None]) -> int:
        """Apply *fn* to each open connection of *user_id*; returns how many were visited."""
        visited = 0
        for connection in self.connections(user_id):
            fn(connection)
            visited += 1
        return visited

    def user_ids(self) -> list[int]:
        return list(self._buckets)

    def stats(self) -> dict[str, int]:
        return {"users": len(self._buckets), "connections": len(self)}

    async def close_all(
        self, code: int = WS_CLOSE_GOING_AWAY, reason: str = "Server shutdown"
    ) -> None:
        """Close every registered connection (used on shutdown)."""
        connections = [c for bucket in self._buckets.values() for c in bucket]
        for connection in connections:
            await connection.close(code, reason)
        self._buckets.clear()

    # ------------------------------------------------------------------
    # Heartbeat sweep
    # ------------------------------------------------------------------

    @property
    def heartbeat_running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Start the heartbeat background task."""
        if self._task is not None:
            logger.warning("Heartbeat sweep already running")
            return
        self._task = asyncio.create_task(self._heartbeat_loop(), name="push-heartbeat")
        logger.info(
            "Started heartbeat sweep: interval_s=%s, timeout_s=%s",
            self._heartbeat_interval_s,
            self._heartbeat_timeout_s,
        )

    async def stop(self) -> None:
        """Stop the heartbeat background task gracefully."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Heartbeat sweep stopped")

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval_s)
                try:
                    await self.sweep()
                except Exception:
                    logger.exception("Heartbeat sweep failed")
        except asyncio.CancelledError:
            logger.debug("Heartbeat loop cancelled")
            raise

    async def sweep(self) -> int:
        """Run one heartbeat tick.

        Closes and unregisters every connection that has sent no frame since
        its last ping for longer than the heartbeat timeout, then sends a fresh
        ping to each remaining connection without an outstanding one.  Clients
        must answer with an application frame (normally ``pong``); protocol
        level pings are handled by the server and do not count.
        Returns the number of connections closed.
        """
        now = self._clock()
        expired: list[LiveConnection] = []
        for user_id in self.user_ids():
            for connection in self.connections(user_id):
                if connection.ping_expired(now, self._heartbeat_timeout_s):
                    expired.append(connection)

        for connection in expired:
            error = HeartbeatTimeoutError(
                f"Connection {connection.connection_id} of user {connection.user_id} "
                f"missed its heartbeat ({self._heartbeat_timeout_s}s)"
            )
            logger.info("%s; closing", error)
            self._metrics.heartbeat_timeout()
            await connection.close(WS_CLOSE_GOING_AWAY, "Heartbeat timeout", error=error)

        payload = encode_message(Ping())
        for user_id in self.user_ids():
            for connection in self.connections(user_id):
                if connection.ping_outstanding:
                    continue
                try:
                    if connection.enqueue(payload):
                        connection.mark_ping_sent()
                except PushChannelError as exc:
                    logger.info("Could not ping %s: %s", connection.connection_id, exc)

        return len(expired)
