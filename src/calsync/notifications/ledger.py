"""Durable notification ledger backed by the ``notifications`` table.

Every write is a single statement, so each operation is atomic on its own.
Lookups of a missing notification id raise ``KeyError`` (mapped to 404 by the
API layer).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import asyncpg

from calsync.models import (
    NotificationCreate,
    NotificationFilter,
    NotificationPriority,
    NotificationRecord,
    NotificationType,
)

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, user_id, type, title, message, priority,
    related_event_id, related_event_uid,
    related_user_id, related_user_name, related_user_email,
    requires_action, is_read, is_dismissed, action_taken, created_at
"""


def _row_to_record(row: Mapping[str, Any]) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        user_id=row["user_id"],
        type=NotificationType(row["type"]),
        title=row["title"],
        message=row["message"],
        priority=NotificationPriority(row["priority"]),
        related_event_id=row["related_event_id"],
        related_event_uid=row["related_event_uid"],
        related_user_id=row["related_user_id"],
        related_user_name=row["related_user_name"],
        related_user_email=row["related_user_email"],
        requires_action=row["requires_action"],
        is_read=row["is_read"],
        is_dismissed=row["is_dismissed"],
        action_taken=row["action_taken"],
        created_at=row["created_at"],
    )


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 3``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class NotificationLedger:
    """Create, query and update notifications on an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, notification: NotificationCreate) -> NotificationRecord:
        """Persist a new unread, undismissed notification."""
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO notifications (
                user_id, type, title, message, priority,
                related_event_id, related_event_uid,
                related_user_id, related_user_name, related_user_email,
                requires_action
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_COLUMNS}
            """,
            notification.user_id,
            str(notification.type),
            notification.title,
            notification.message,
            str(notification.priority),
            notification.related_event_id,
            notification.related_event_uid,
            notification.related_user_id,
            notification.related_user_name,
            notification.related_user_email,
            notification.requires_action,
        )
        record = _row_to_record(row)
        logger.debug(
            "Created %s notification %s for user %s", record.type, record.id, record.user_id
        )
        return record

    async def _update_one(self, notification_id: int, assignments: str) -> NotificationRecord:
        row = await self._pool.fetchrow(
            f"UPDATE notifications SET {assignments} WHERE id = $1 RETURNING {_COLUMNS}",
            notification_id,
        )
        if row is None:
            raise KeyError(f"Notification {notification_id} not found")
        return _row_to_record(row)

    async def mark_as_read(self, notification_id: int) -> NotificationRecord:
        return await self._update_one(notification_id, "is_read = true")

    async def dismiss(self, notification_id: int) -> NotificationRecord:
        return await self._update_one(notification_id, "is_dismissed = true")

    async def mark_action_taken(self, notification_id: int) -> NotificationRecord:
        """Record that the user acted; the notification no longer requires action."""
        return await self._update_one(
            notification_id, "action_taken = true, requires_action = false"
        )

    async def mark_all_as_read(self, user_id: int) -> int:
        """Mark every unread notification of *user_id* read; returns how many changed."""
        status = await self._pool.execute(
            "UPDATE notifications SET is_read = true WHERE user_id = $1 AND is_read = false",
            user_id,
        )
        return _affected(status)

    async def cleanup_older_than(self, days: int = 30) -> int:
        """Delete notifications created more than *days* ago."""
        if days < 0:
            raise ValueError("days must be non-negative")
        status = await self._pool.execute(
            "DELETE FROM notifications WHERE created_at < now() - make_interval(days => $1)",
            days,
        )
        removed = _affected(status)
        if removed:
            logger.info("Removed %d notifications older than %d days", removed, days)
        return removed

    async def delete_for_event(self, event_id: int) -> int:
        status = await self._pool.execute(
            "DELETE FROM notifications WHERE related_event_id = $1", event_id
        )
        return _affected(status)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, notification_id: int) -> NotificationRecord | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM notifications WHERE id = $1", notification_id
        )
        return _row_to_record(row) if row is not None else None

    async def unread_count(self, user_id: int) -> int:
        count = await self._pool.fetchval(
            """
            SELECT count(*) FROM notifications
            WHERE user_id = $1 AND is_read = false AND is_dismissed = false
            """,
            user_id,
        )
        return count or 0

    async def list_unread(self, user_id: int) -> list[NotificationRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM notifications
            WHERE user_id = $1 AND is_read = false AND is_dismissed = false
            ORDER BY created_at DESC, id DESC
            """,
            user_id,
        )
        return [_row_to_record(row) for row in rows]

    async def list_undismissed(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> list[NotificationRecord]:
        """Newest-first page of the user's undismissed notifications (backlog catch-up)."""
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM notifications
            WHERE user_id = $1 AND is_dismissed = false
            ORDER BY created_at DESC, id DESC
            OFFSET $2 LIMIT $3
            """,
            user_id,
            offset,
            limit,
        )
        return [_row_to_record(row) for row in rows]

    async def list_notifications(
        self, query: NotificationFilter
    ) -> tuple[list[NotificationRecord], int]:
        """Return one filtered page and the total number of matching rows.

        Dismissed notifications are excluded unless ``include_dismissed`` is
        set.  Results are ordered newest first.
        """
        conditions: list[str] = ["user_id = $1"]
        args: list[object] = [query.user_id]
        idx = 2

        if query.unread_only:
            conditions.append("is_read = false")
        if query.requires_action_only:
            conditions.append("requires_action = true")
        if not query.include_dismissed:
            conditions.append("is_dismissed = false")
        if query.types:
            conditions.append(f"type = ANY(${idx}::text[])")
            args.append([str(t) for t in query.types])
            idx += 1
        if query.priority is not None:
            conditions.append(f"priority = ${idx}")
            args.append(str(query.priority))
            idx += 1
        if query.related_event_uid is not None:
            conditions.append(f"related_event_uid = ${idx}")
            args.append(query.related_event_uid)
            idx += 1

        where_clause = " WHERE " + " AND ".join(conditions)

        total = await self._pool.fetchval(
            f"SELECT count(*) FROM notifications{where_clause}", *args
        )

        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM notifications{where_clause} "
            f"ORDER BY created_at DESC, id DESC "
            f"OFFSET ${idx} LIMIT ${idx + 1}",
            *args,
            query.offset,
            query.limit,
        )
        return [_row_to_record(row) for row in rows], total or 0
