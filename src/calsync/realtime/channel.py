"""WebSocket endpoint that binds clients to users and feeds the registry.

Handshake: the user id comes from the ``user_id`` (or ``userId``) query
parameter, or from a first ``{"type": "auth", "user_id": ...}`` frame sent
within the handshake timeout.  Anything else closes the socket with 1008.

After authentication the client receives a ``connection_ack`` carrying its
unread count, then its undismissed notification backlog, then live traffic.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from fastapi import APIRouter, WebSocket

from calsync.config import PushConfig
from calsync.core.logging import set_user_context
from calsync.errors import ProtocolError, PushChannelError, SyncError
from calsync.notifications.ledger import NotificationLedger
from calsync.realtime.broadcaster import Broadcaster
from calsync.realtime.connection import WS_CLOSE_POLICY_VIOLATION, LiveConnection
from calsync.realtime.messages import (
    AuthRequest,
    ConnectionAck,
    EventChanged,
    EventDeleted,
    InboundMessage,
    InboundPing,
    InboundPong,
    NotificationMessage,
    Pong,
    SyncRequest,
    SyncRequestedAck,
    encode_message,
    parse_inbound,
)
from calsync.realtime.registry import ConnectionRegistry
from calsync.sync.service import CalendarSyncService

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    """Answers whether a user id may open a push connection."""

    async def user_exists(self, user_id: int) -> bool: ...


class AnyUserDirectory:
    """Accepts every positive user id; the app has no user table of its own."""

    async def user_exists(self, user_id: int) -> bool:
        return user_id > 0


def _coerce_user_id(raw: object) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None


class PushChannel:
    """Serves the live push endpoint on every configured path."""

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        broadcaster: Broadcaster,
        config: PushConfig | None = None,
        ledger: NotificationLedger | None = None,
        sync_service: CalendarSyncService | None = None,
        users: UserDirectory | None = None,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._config = config or PushConfig()
        self._ledger = ledger
        self._sync_service = sync_service
        self._users = users or AnyUserDirectory()

    def attach(
        self,
        *,
        ledger: NotificationLedger | None = None,
        sync_service: CalendarSyncService | None = None,
    ) -> None:
        """Late-bind the database-backed collaborators once the pool exists."""
        self._ledger = ledger
        self._sync_service = sync_service

    def router(self) -> APIRouter:
        router = APIRouter(tags=["push"])
        for path in self._config.paths:
            router.add_api_websocket_route(path, self.handle)
        return router

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()

        user_id = await self._handshake(websocket)
        if user_id is None:
            return

        connection = LiveConnection(
            websocket,
            path=websocket.url.path,
            max_buffered_bytes=self._config.max_buffered_bytes,
        )
        connection.authenticate(user_id)
        self._registry.register(user_id, connection)
        set_user_context(user_id)
        try:
            await self._send_welcome(connection)
            await self._read_loop(websocket, connection)
        except PushChannelError as exc:
            logger.info("Push connection %s ended: %s", connection.connection_id, exc)
        finally:
            await connection.close()
            set_user_context(None)

    async def _handshake(self, websocket: WebSocket) -> int | None:
        raw = websocket.query_params.get("user_id") or websocket.query_params.get("userId")
        if raw is not None:
            user_id = _coerce_user_id(raw)
        else:
            user_id = await self._await_auth_frame(websocket)

        if user_id is None or not await self._users.user_exists(user_id):
            logger.info("Rejecting push connection: user id %r not accepted", raw or user_id)
            await websocket.close(code=WS_CLOSE_POLICY_VIOLATION, reason="Authentication failed")
            return None
        return user_id

    async def _await_auth_frame(self, websocket: WebSocket) -> int | None:
        try:
            message = await asyncio.wait_for(
                websocket.receive(), timeout=self._config.handshake_timeout_s
            )
        except TimeoutError:
            logger.info("Push handshake timed out after %ss", self._config.handshake_timeout_s)
            return None
        if message["type"] == "websocket.disconnect":
            return None
        frame = message.get("text") or message.get("bytes")
        if frame is None:
            return None
        try:
            inbound = parse_inbound(frame)
        except ProtocolError as exc:
            logger.info("Bad push handshake frame: %s", exc)
            return None
        if not isinstance(inbound, AuthRequest):
            return None
        return inbound.user_id

    async def _send_welcome(self, connection: LiveConnection) -> None:
        assert connection.user_id is not None
        unread = 0
        backlog = []
        if self._ledger is not None:
            unread = await self._ledger.unread_count(connection.user_id)
            backlog = await self._ledger.list_undismissed(
                connection.user_id, limit=self._config.backlog_limit
            )
        connection.enqueue(
            encode_message(
                ConnectionAck(
                    user_id=connection.user_id,
                    connection_id=connection.connection_id,
                    unread_count=unread,
                )
            )
        )
        for record in backlog:
            connection.enqueue(encode_message(NotificationMessage(notification=record)))

    async def _read_loop(self, websocket: WebSocket, connection: LiveConnection) -> None:
        while connection.is_open:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug("Client closed push connection %s", connection.connection_id)
                return
            frame = message.get("text") or message.get("bytes")
            if frame is None:
                continue
            connection.mark_alive()
            try:
                inbound = parse_inbound(frame)
            except ProtocolError as exc:
                logger.info("Dropping frame from %s: %s", connection.connection_id, exc)
                continue
            await self._dispatch(connection, inbound)

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, connection: LiveConnection, inbound: InboundMessage) -> None:
        assert connection.user_id is not None
        if isinstance(inbound, AuthRequest):
            if inbound.user_id != connection.user_id:
                logger.info(
                    "Ignoring auth for user %s on connection of user %s",
                    inbound.user_id,
                    connection.user_id,
                )
                return
            ack = ConnectionAck(
                user_id=connection.user_id, connection_id=connection.connection_id
            )
            connection.enqueue(encode_message(ack))
        elif isinstance(inbound, InboundPing):
            connection.enqueue(encode_message(Pong()))
        elif isinstance(inbound, InboundPong):
            # mark_alive already ran for this frame
            pass
        elif isinstance(inbound, SyncRequest):
            connection.enqueue(encode_message(await self._request_sync(connection, inbound)))
        elif isinstance(inbound, EventDeleted):
            self._broadcaster.broadcast(
                connection.user_id,
                EventChanged(
                    uid=inbound.uid, calendar_id=inbound.calendar_id, change_type="deleted"
                ),
                exclude=connection,
            )

    async def _request_sync(
        self, connection: LiveConnection, request: SyncRequest
    ) -> SyncRequestedAck:
        if self._sync_service is None:
            return SyncRequestedAck(
                calendar_id=request.calendar_id, accepted=False, reason="Sync unavailable"
            )
        try:
            accepted = await self._sync_service.request_sync(
                request.calendar_id, user_id=connection.user_id
            )
        except SyncError as exc:
            return SyncRequestedAck(
                calendar_id=request.calendar_id, accepted=False, reason=str(exc)
            )
        return SyncRequestedAck(
            calendar_id=request.calendar_id,
            accepted=accepted,
            reason=None if accepted else "Sync already in progress",
        )
