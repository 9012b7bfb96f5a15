"""Tagged messages exchanged over the live push channel.

Every message is a JSON object with a ``type`` field.  Outbound messages are
hints: a client that receives one re-fetches authoritative state over REST
rather than trusting the push payload as the only truth.
"""

from __future__ import annotations

import time
from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from calsync.errors import ProtocolError
from calsync.models import NotificationRecord

ChangeType = Literal["added", "modified", "deleted"]


class _Message(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class ConnectionAck(_Message):
    type: Literal["connection_ack"] = "connection_ack"
    user_id: int
    connection_id: str
    unread_count: int = 0
    timestamp: float = Field(default_factory=time.time)


class CalendarChanged(_Message):
    type: Literal["calendar_changed"] = "calendar_changed"
    calendar_id: int
    change_type: Literal["synced", "created", "updated", "deleted"] = "synced"
    counts: dict[str, int] = Field(default_factory=dict)


class EventChanged(_Message):
    type: Literal["event_changed"] = "event_changed"
    uid: str
    calendar_id: int
    change_type: ChangeType


class NotificationMessage(_Message):
    type: Literal["notification"] = "notification"
    notification: NotificationRecord
    unread_count: int | None = None


class Ping(_Message):
    type: Literal["ping"] = "ping"
    timestamp: float = Field(default_factory=time.time)


class Pong(_Message):
    type: Literal["pong"] = "pong"
    timestamp: float = Field(default_factory=time.time)


class SyncRequestedAck(_Message):
    type: Literal["sync_requested_ack"] = "sync_requested_ack"
    calendar_id: int
    accepted: bool
    reason: str | None = None


OutboundMessage = Annotated[
    ConnectionAck
    | CalendarChanged
    | EventChanged
    | NotificationMessage
    | Ping
    | Pong
    | SyncRequestedAck,
    Field(discriminator="type"),
]


def encode_message(message: _Message) -> str:
    """Serialize an outbound message to its wire text."""
    return message.model_dump_json(exclude_none=True)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class AuthRequest(_Inbound):
    type: Literal["auth"] = "auth"
    user_id: int = Field(validation_alias=AliasChoices("user_id", "userId"))


class InboundPing(_Inbound):
    type: Literal["ping"] = "ping"
    timestamp: float | None = None


class InboundPong(_Inbound):
    type: Literal["pong"] = "pong"
    timestamp: float | None = None


class SyncRequest(_Inbound):
    type: Literal["sync_request"] = "sync_request"
    calendar_id: int = Field(validation_alias=AliasChoices("calendar_id", "calendarId"))


class EventDeleted(_Inbound):
    type: Literal["event_deleted"] = "event_deleted"
    uid: str = Field(min_length=1)
    calendar_id: int = Field(validation_alias=AliasChoices("calendar_id", "calendarId"))


InboundMessage = Annotated[
    AuthRequest | InboundPing | InboundPong | SyncRequest | EventDeleted,
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def parse_inbound(text: str | bytes) -> InboundMessage:
    """Decode one inbound frame.

    Raises
    ------
    ProtocolError
        If the frame is not JSON, has no known ``type``, or fails validation.
    """
    try:
        return _inbound_adapter.validate_json(text)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ProtocolError(f"Invalid push message: {errors}") from exc
