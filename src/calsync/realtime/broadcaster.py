"""Best-effort fan-out of push messages to every live connection of a user."""

from __future__ import annotations

import logging

from calsync.core.metrics import CalsyncMetrics, get_metrics
from calsync.errors import PushChannelError
from calsync.realtime.connection import LiveConnection
from calsync.realtime.messages import OutboundMessage, encode_message
from calsync.realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class Broadcaster:
    """Delivers typed messages through a ``ConnectionRegistry``.

    ``broadcast`` never blocks and never raises: the message is serialized
    once and queued on each open connection; a closed or overflowing
    connection is skipped.  There is no acknowledgement and no retry.
    """

    def __init__(self, registry: ConnectionRegistry, *, metrics: CalsyncMetrics | None = None):
        self._registry = registry
        self._metrics = metrics or get_metrics()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def broadcast(
        self,
        user_id: int,
        message: OutboundMessage,
        *,
        exclude: LiveConnection | None = None,
    ) -> int:
        """Queue *message* on every open connection of *user_id* except *exclude*.

        Returns the number of connections the message was queued on.
        """
        try:
            payload = encode_message(message)
        except Exception:
            logger.exception("Could not serialize %s push message", type(message).__name__)
            return 0

        delivered = 0

        def _deliver(connection: LiveConnection) -> None:
            nonlocal delivered
            if connection is exclude:
                return
            try:
                queued = connection.enqueue(payload)
            except PushChannelError as exc:
                logger.info("Dropped %s for %s: %s", message.type, connection.connection_id, exc)
                self._metrics.message_dropped("backpressure")
                return
            if queued:
                delivered += 1
                self._metrics.message_delivered()
            else:
                self._metrics.message_dropped("closed")

        try:
            self._registry.for_each_connection(user_id, _deliver)
        except Exception:
            logger.exception("Broadcast of %s to user %s failed", message.type, user_id)

        logger.debug("Broadcast %s to user %s: %d delivered", message.type, user_id, delivered)
        return delivered
