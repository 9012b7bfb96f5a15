"""Local event storage used by the sync engine.

``EventStore`` is the contract the engine depends on; ``PostgresEventStore``
implements it on an asyncpg pool against the ``calendars`` and ``events``
tables.  ``apply_change_set`` is the only multi-row write and runs in one
transaction together with the cursor update.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg

from calsync.errors import ApplyError
from calsync.models import CalendarCollection, CalendarEvent, SyncStatus

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    """Persistence contract for calendars and their events."""

    async def get_calendar(self, calendar_id: int) -> CalendarCollection | None:
        """Return one calendar, or None when unknown."""
        ...

    async def list_calendars(self, *, user_id: int | None = None) -> list[CalendarCollection]:
        """Return calendars, optionally only those owned by *user_id*."""
        ...

    async def list_events(self, calendar_id: int) -> list[CalendarEvent]:
        """Return the local snapshot of one calendar."""
        ...

    async def list_all_events(self) -> list[CalendarEvent]:
        """Return every stored event (sequence warm-up)."""
        ...

    async def apply_change_set(
        self,
        calendar_id: int,
        *,
        upserts: Sequence[CalendarEvent],
        deleted_uids: Sequence[str],
        new_cursor: str,
        expected_cursor: str | None,
    ) -> dict[str, int]:
        """Write events, deletions and the new cursor atomically.

        Returns the stored id of every upserted event, keyed by UID.

        Raises ``ApplyError`` (and writes nothing) when the stored cursor is no
        longer *expected_cursor* or any statement fails.
        """
        ...

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        """Insert or update one event and return it with its id."""
        ...

    async def mark_synced(
        self,
        calendar_id: int,
        uid: str,
        *,
        revision_tag: str | None,
        href: str,
        raw_data: str,
    ) -> None:
        """Record a successful push."""
        ...

    async def mark_sync_failed(self, calendar_id: int, uid: str, error: str) -> None:
        """Record a failed push; the stored sequence is left alone."""
        ...

    async def delete_event(self, calendar_id: int, uid: str) -> None:
        """Remove one event locally."""
        ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_EVENT_COLUMNS = """
    id, calendar_id, uid, sequence, etag, href, sync_status, sync_error,
    last_sync_attempt, title, description, location, starts_at, ends_at,
    all_day, recurrence_rule, attendees, resources, raw_data
"""

_UPSERT_EVENT_SQL = """
    INSERT INTO events (
        calendar_id, uid, sequence, etag, href, sync_status, sync_error,
        last_sync_attempt, title, description, location, starts_at, ends_at,
        all_day, recurrence_rule, attendees, resources, raw_data
    )
    VALUES (
        $1, $2, $3, $4, $5, $6, $7,
        $8, $9, $10, $11, $12, $13,
        $14, $15, $16::jsonb, $17::jsonb, $18
    )
    ON CONFLICT (calendar_id, uid) DO UPDATE SET
        sequence = GREATEST(events.sequence, EXCLUDED.sequence),
        etag = EXCLUDED.etag,
        href = EXCLUDED.href,
        sync_status = EXCLUDED.sync_status,
        sync_error = EXCLUDED.sync_error,
        last_sync_attempt = EXCLUDED.last_sync_attempt,
        title = EXCLUDED.title,
        description = EXCLUDED.description,
        location = EXCLUDED.location,
        starts_at = EXCLUDED.starts_at,
        ends_at = EXCLUDED.ends_at,
        all_day = EXCLUDED.all_day,
        recurrence_rule = EXCLUDED.recurrence_rule,
        attendees = EXCLUDED.attendees,
        resources = EXCLUDED.resources,
        raw_data = EXCLUDED.raw_data,
        updated_at = now()
    RETURNING id, sequence
"""


def _encode_jsonb(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _decode_json_list(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if isinstance(value, list):
        return [dict(item) for item in value if isinstance(item, Mapping)]
    return []


def _event_params(event: CalendarEvent) -> tuple[Any, ...]:
    return (
        event.calendar_id,
        event.uid,
        event.sequence,
        event.revision_tag,
        event.href,
        str(event.sync_status),
        event.sync_error,
        event.last_sync_attempt,
        event.title,
        event.description,
        event.location,
        event.start,
        event.end,
        event.all_day,
        event.recurrence_rule,
        _encode_jsonb(event.attendees),
        _encode_jsonb(event.resources),
        event.raw_data,
    )


def _row_to_event(row: Mapping[str, Any]) -> CalendarEvent:
    return CalendarEvent(
        id=row["id"],
        calendar_id=row["calendar_id"],
        uid=row["uid"],
        sequence=row["sequence"],
        revision_tag=row["etag"],
        href=row["href"],
        sync_status=SyncStatus(row["sync_status"]),
        sync_error=row["sync_error"],
        last_sync_attempt=row["last_sync_attempt"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=row["starts_at"],
        end=row["ends_at"],
        all_day=row["all_day"],
        recurrence_rule=row["recurrence_rule"],
        attendees=_decode_json_list(row["attendees"]),
        resources=_decode_json_list(row["resources"]),
        raw_data=row["raw_data"],
    )


def _row_to_calendar(row: Mapping[str, Any]) -> CalendarCollection:
    return CalendarCollection(
        calendar_id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        remote_url=row["remote_url"],
        cursor=row["sync_token"],
    )


class PostgresEventStore:
    """``EventStore`` backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_calendar(self, calendar_id: int) -> CalendarCollection | None:
        row = await self._pool.fetchrow(
            "SELECT id, user_id, name, remote_url, sync_token FROM calendars WHERE id = $1",
            calendar_id,
        )
        return _row_to_calendar(row) if row is not None else None

    async def list_calendars(self, *, user_id: int | None = None) -> list[CalendarCollection]:
        if user_id is None:
            rows = await self._pool.fetch(
                "SELECT id, user_id, name, remote_url, sync_token FROM calendars ORDER BY id"
            )
        else:
            rows = await self._pool.fetch(
                "SELECT id, user_id, name, remote_url, sync_token FROM calendars "
                "WHERE user_id = $1 ORDER BY id",
                user_id,
            )
        return [_row_to_calendar(row) for row in rows]

    async def create_calendar(
        self,
        *,
        user_id: int,
        name: str,
        remote_url: str | None = None,
    ) -> CalendarCollection:
        row = await self._pool.fetchrow(
            """
            INSERT INTO calendars (user_id, name, remote_url)
            VALUES ($1, $2, $3)
            RETURNING id, user_id, name, remote_url, sync_token
            """,
            user_id,
            name,
            remote_url,
        )
        return _row_to_calendar(row)

    async def list_events(self, calendar_id: int) -> list[CalendarEvent]:
        rows = await self._pool.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE calendar_id = $1 ORDER BY id",
            calendar_id,
        )
        return [_row_to_event(row) for row in rows]

    async def list_all_events(self) -> list[CalendarEvent]:
        rows = await self._pool.fetch(f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY id")
        return [_row_to_event(row) for row in rows]

    async def apply_change_set(
        self,
        calendar_id: int,
        *,
        upserts: Sequence[CalendarEvent],
        deleted_uids: Sequence[str],
        new_cursor: str,
        expected_cursor: str | None,
    ) -> dict[str, int]:
        stored_ids: dict[str, int] = {}
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for event in upserts:
                        row = await conn.fetchrow(_UPSERT_EVENT_SQL, *_event_params(event))
                        stored_ids[event.uid] = row["id"]
                    if deleted_uids:
                        await conn.execute(
                            "DELETE FROM events WHERE calendar_id = $1 AND uid = ANY($2::text[])",
                            calendar_id,
                            list(deleted_uids),
                        )
                    status = await conn.execute(
                        """
                        UPDATE calendars
                        SET sync_token = $2, last_synced_at = now()
                        WHERE id = $1 AND sync_token IS NOT DISTINCT FROM $3
                        """,
                        calendar_id,
                        new_cursor,
                        expected_cursor,
                    )
                    if status.split()[-1] == "0":
                        raise ApplyError(
                            f"Cursor for calendar {calendar_id} changed during sync",
                            calendar_id=calendar_id,
                        )
        except ApplyError:
            raise
        except (asyncpg.PostgresError, OSError) as exc:
            raise ApplyError(
                f"Failed to apply change-set for calendar {calendar_id}: {exc}",
                calendar_id=calendar_id,
            ) from exc
        return stored_ids

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        row = await self._pool.fetchrow(_UPSERT_EVENT_SQL, *_event_params(event))
        return event.model_copy(update={"id": row["id"], "sequence": row["sequence"]})

    async def mark_synced(
        self,
        calendar_id: int,
        uid: str,
        *,
        revision_tag: str | None,
        href: str,
        raw_data: str,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE events
            SET sync_status = 'synced', etag = $3, href = $4, raw_data = $5,
                sync_error = NULL, last_sync_attempt = $6, updated_at = now()
            WHERE calendar_id = $1 AND uid = $2
            """,
            calendar_id,
            uid,
            revision_tag,
            href,
            raw_data,
            datetime.now(UTC),
        )

    async def mark_sync_failed(self, calendar_id: int, uid: str, error: str) -> None:
        await self._pool.execute(
            """
            UPDATE events
            SET sync_status = 'sync_failed', sync_error = $3, last_sync_attempt = $4,
                updated_at = now()
            WHERE calendar_id = $1 AND uid = $2
            """,
            calendar_id,
            uid,
            error[:1000],
            datetime.now(UTC),
        )

    async def delete_event(self, calendar_id: int, uid: str) -> None:
        await self._pool.execute(
            "DELETE FROM events WHERE calendar_id = $1 AND uid = $2",
            calendar_id,
            uid,
        )
