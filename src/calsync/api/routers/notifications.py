"""Notification endpoints: paginated listing, unread count and state changes.

Every endpoint is scoped to ``user_id``; acting on another user's
notification is reported as 404, exactly like a missing one.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from calsync.api.models import (
    ApiResponse,
    MarkAllReadResult,
    PaginatedResponse,
    PaginationMeta,
    UnreadCount,
)
from calsync.models import (
    NotificationFilter,
    NotificationPriority,
    NotificationRecord,
    NotificationType,
)
from calsync.notifications.ledger import NotificationLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _get_ledger() -> NotificationLedger:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("NotificationLedger not initialized")


async def _require_owned(
    ledger: NotificationLedger, notification_id: int, user_id: int
) -> NotificationRecord:
    record = await ledger.get(notification_id)
    if record is None or record.user_id != user_id:
        raise KeyError(f"Notification {notification_id} not found")
    return record


@router.get("", response_model=PaginatedResponse[NotificationRecord])
async def list_notifications(
    user_id: int = Query(..., description="Owner of the notifications"),
    offset: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(50, ge=1, le=100, description="Max records to return"),
    unread_only: bool = Query(False, description="Only unread notifications"),
    requires_action_only: bool = Query(False, description="Only those awaiting a response"),
    include_dismissed: bool = Query(False, description="Include dismissed notifications"),
    types: list[NotificationType] | None = Query(
        None, alias="type", description="Filter by type (repeatable)"
    ),
    priority: NotificationPriority | None = Query(None, description="Filter by priority"),
    event_uid: str | None = Query(None, description="Filter by related event UID"),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> PaginatedResponse[NotificationRecord]:
    """Return the user's notifications, newest first."""
    query = NotificationFilter(
        user_id=user_id,
        unread_only=unread_only,
        requires_action_only=requires_action_only,
        include_dismissed=include_dismissed,
        types=types,
        priority=priority,
        related_event_uid=event_uid,
        limit=limit,
        offset=offset,
    )
    records, total = await ledger.list_notifications(query)
    return PaginatedResponse[NotificationRecord](
        data=records,
        meta=PaginationMeta(total=total, offset=offset, limit=limit),
    )


@router.get("/unread-count", response_model=ApiResponse[UnreadCount])
async def unread_count(
    user_id: int = Query(...),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> ApiResponse[UnreadCount]:
    count = await ledger.unread_count(user_id)
    return ApiResponse[UnreadCount](data=UnreadCount(unread_count=count))


@router.post("/read-all", response_model=ApiResponse[MarkAllReadResult])
async def mark_all_read(
    user_id: int = Query(...),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> ApiResponse[MarkAllReadResult]:
    updated = await ledger.mark_all_as_read(user_id)
    logger.info("Marked %d notification(s) read for user %s", updated, user_id)
    return ApiResponse[MarkAllReadResult](data=MarkAllReadResult(updated=updated))


@router.post("/{notification_id}/read", response_model=ApiResponse[NotificationRecord])
async def mark_read(
    notification_id: int,
    user_id: int = Query(...),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> ApiResponse[NotificationRecord]:
    await _require_owned(ledger, notification_id, user_id)
    record = await ledger.mark_as_read(notification_id)
    return ApiResponse[NotificationRecord](data=record)


@router.post("/{notification_id}/dismiss", response_model=ApiResponse[NotificationRecord])
async def dismiss(
    notification_id: int,
    user_id: int = Query(...),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> ApiResponse[NotificationRecord]:
    await _require_owned(ledger, notification_id, user_id)
    record = await ledger.dismiss(notification_id)
    return ApiResponse[NotificationRecord](data=record)


@router.post("/{notification_id}/action-taken", response_model=ApiResponse[NotificationRecord])
async def action_taken(
    notification_id: int,
    user_id: int = Query(...),
    ledger: NotificationLedger = Depends(_get_ledger),
) -> ApiResponse[NotificationRecord]:
    await _require_owned(ledger, notification_id, user_id)
    record = await ledger.mark_action_taken(notification_id)
    return ApiResponse[NotificationRecord](data=record)
