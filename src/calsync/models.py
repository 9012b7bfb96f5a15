"""Canonical records shared by the sync engine, ledger and push channel."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SyncMode = Literal["full", "incremental"]


class SyncStatus(StrEnum):
    """Where a local event stands relative to its remote copy."""

    LOCAL = "local"
    PENDING = "pending"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


class CalendarEvent(BaseModel):
    """Canonical event record.

    Scheduling and content fields are payload; the core only reasons about
    ``uid``, ``sequence``, ``revision_tag``, ``href`` and ``sync_status``.
    """

    model_config = ConfigDict(extra="forbid")

    uid: str = Field(min_length=1)
    calendar_id: int
    id: int | None = None
    sequence: int = Field(default=0, ge=0)
    revision_tag: str | None = None
    href: str | None = None
    sync_status: SyncStatus = SyncStatus.LOCAL
    sync_error: str | None = None
    last_sync_attempt: datetime | None = None

    title: str = "Untitled Event"
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    recurrence_rule: str | None = None
    attendees: list[dict[str, Any]] = Field(default_factory=list)
    resources: list[dict[str, Any]] = Field(default_factory=list)
    raw_data: str | None = None

    @field_validator("uid")
    @classmethod
    def _normalize_uid(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("uid must be a non-empty string")
        return normalized

    @property
    def has_unpushed_edit(self) -> bool:
        """True when the local copy carries an edit the remote has not seen."""
        return self.sync_status in (SyncStatus.PENDING, SyncStatus.SYNC_FAILED)

    @property
    def never_pushed(self) -> bool:
        return self.sync_status == SyncStatus.LOCAL and self.href is None


class CalendarCollection(BaseModel):
    """A local calendar and its (optional) remote counterpart."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: int
    user_id: int
    name: str = ""
    remote_url: str | None = None
    cursor: str | None = None

    @property
    def is_remote(self) -> bool:
        return self.remote_url is not None


class SyncConflict(BaseModel):
    """A local pending edit that collided with a concurrent remote change."""

    model_config = ConfigDict(extra="forbid")

    uid: str
    local_sequence: int
    remote_sequence: int | None = None
    local_revision_tag: str | None = None
    remote_revision_tag: str | None = None
    resolution: Literal["remote_won", "local_kept", "dropped", "recreated"]


class SyncChangeSet(BaseModel):
    """Outcome of exactly one synchronize() call."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: int
    mode: SyncMode
    added: list[CalendarEvent] = Field(default_factory=list)
    modified: list[CalendarEvent] = Field(default_factory=list)
    deleted_uids: list[str] = Field(default_factory=list)
    new_cursor: str
    conflicts: list[SyncConflict] = Field(default_factory=list)
    skipped_hrefs: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted_uids)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "deleted": len(self.deleted_uids),
        }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationType(StrEnum):
    EVENT_INVITATION = "event_invitation"
    EVENT_UPDATE = "event_update"
    EVENT_CANCELLATION = "event_cancellation"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    INVITATION_TENTATIVE = "invitation_tentative"
    EVENT_REMINDER = "event_reminder"
    RESOURCE_CONFIRMED = "resource_confirmed"
    RESOURCE_DENIED = "resource_denied"


class NotificationPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationCreate(BaseModel):
    """Fields a caller supplies when creating a notification."""

    model_config = ConfigDict(extra="forbid")

    user_id: int
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    priority: NotificationPriority = NotificationPriority.MEDIUM
    related_event_id: int | None = None
    related_event_uid: str | None = None
    related_user_id: int | None = None
    related_user_name: str | None = None
    related_user_email: str | None = None
    requires_action: bool = False


class NotificationRecord(BaseModel):
    """Durable user-facing notification.

    These are exactly the attributes exposed to any consumer (UI, push
    channel, digests).
    """

    model_config = ConfigDict(extra="forbid")

    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    related_event_id: int | None = None
    related_event_uid: str | None = None
    related_user_id: int | None = None
    related_user_name: str | None = None
    related_user_email: str | None = None
    requires_action: bool = False
    is_read: bool = False
    is_dismissed: bool = False
    action_taken: bool = False
    created_at: datetime


class NotificationFilter(BaseModel):
    """Query options for listing notifications."""

    model_config = ConfigDict(extra="forbid")

    user_id: int
    unread_only: bool = False
    requires_action_only: bool = False
    include_dismissed: bool = False
    types: list[NotificationType] | None = None
    priority: NotificationPriority | None = None
    related_event_uid: str | None = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
