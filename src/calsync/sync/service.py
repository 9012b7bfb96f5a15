"""Glue between the sync engine, the notification ledger and the push channel.

``CalendarSyncService.sync_calendar`` is what every entry point calls (REST,
CLI, push-channel ``sync_request``): it runs one ``synchronize`` and then fans
the outcome out to the calendar owner.  Fan-out is best effort; a ledger or
broadcast failure is logged and never turns a committed sync into an error.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, ConfigDict, Field

from calsync.errors import CalendarNotSyncableError, SyncError
from calsync.models import CalendarCollection, NotificationRecord, SyncChangeSet
from calsync.notifications.builders import remote_added_notification, remote_updated_notification
from calsync.notifications.ledger import NotificationLedger
from calsync.realtime.broadcaster import Broadcaster
from calsync.realtime.messages import CalendarChanged, EventChanged, NotificationMessage
from calsync.sync.engine import SyncEngine
from calsync.sync.store import EventStore

logger = logging.getLogger(__name__)


class CalendarOutcome(BaseModel):
    """Result of syncing one calendar inside ``sync_user``."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: int
    ok: bool
    counts: dict[str, int] = Field(default_factory=dict)
    conflicts: int = 0
    error: str | None = None


class CalendarSyncService:
    """Runs syncs and tells the calendar owner what changed."""

    def __init__(
        self,
        *,
        engine: SyncEngine,
        store: EventStore,
        ledger: NotificationLedger | None = None,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._ledger = ledger
        self._broadcaster = broadcaster
        self._background: set[asyncio.Task[None]] = set()

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    async def sync_calendar(
        self, calendar_id: int, *, timeout: float | None = None
    ) -> SyncChangeSet:
        """Synchronize one calendar and notify its owner.

        Sync errors propagate unchanged. Nothing is broadcast for a failed run
        or for one that changed nothing.
        """
        change_set = await self._engine.synchronize(calendar_id, timeout=timeout)
        if not change_set.is_empty:
            await self._notify_owner(calendar_id, change_set)
        return change_set

    async def sync_user(self, user_id: int) -> list[CalendarOutcome]:
        """Sync every remote calendar owned by *user_id*, one at a time."""
        outcomes: list[CalendarOutcome] = []
        for calendar in await self._store.list_calendars(user_id=user_id):
            if not calendar.is_remote:
                continue
            try:
                change_set = await self.sync_calendar(calendar.calendar_id)
            except SyncError as exc:
                logger.warning("Sync of calendar %s failed: %s", calendar.calendar_id, exc)
                outcomes.append(
                    CalendarOutcome(calendar_id=calendar.calendar_id, ok=False, error=str(exc))
                )
                continue
            outcomes.append(
                CalendarOutcome(
                    calendar_id=calendar.calendar_id,
                    ok=True,
                    counts=change_set.counts(),
                    conflicts=len(change_set.conflicts),
                )
            )
        return outcomes

    async def request_sync(self, calendar_id: int, *, user_id: int | None = None) -> bool:
        """Schedule ``sync_calendar`` in the background.

        Returns False when a background sync of the same calendar is still
        queued or running.  Raises ``CalendarNotSyncableError`` when the
        calendar is unknown, local only, or not owned by *user_id*.
        """
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is None or (user_id is not None and calendar.user_id != user_id):
            raise CalendarNotSyncableError(
                f"Calendar {calendar_id} not found", calendar_id=calendar_id
            )
        if not calendar.is_remote:
            raise CalendarNotSyncableError(
                f"Calendar {calendar_id} is local only", calendar_id=calendar_id
            )
        name = f"calendar-sync-{calendar_id}"
        if any(task.get_name() == name for task in self._background):
            return False
        task = asyncio.create_task(self._background_sync(calendar_id), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _background_sync(self, calendar_id: int) -> None:
        try:
            await self.sync_calendar(calendar_id)
        except SyncError as exc:
            logger.warning("Background sync of calendar %s failed: %s", calendar_id, exc)
        except Exception:
            logger.exception("Background sync of calendar %s crashed", calendar_id)

    async def shutdown(self) -> None:
        """Cancel outstanding background syncs."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _notify_owner(self, calendar_id: int, change_set: SyncChangeSet) -> None:
        try:
            calendar = await self._store.get_calendar(calendar_id)
        except Exception:
            logger.exception("Could not load calendar %s for fan-out", calendar_id)
            return
        if calendar is not None:
            await self._fan_out(calendar, change_set)

    async def _fan_out(self, calendar: CalendarCollection, change_set: SyncChangeSet) -> None:
        records: list[NotificationRecord] = []
        if self._ledger is not None:
            try:
                records = await self._record_notifications(calendar, change_set)
            except Exception:
                logger.exception(
                    "Failed to record notifications for calendar %s", calendar.calendar_id
                )

        if self._broadcaster is None:
            return

        user_id = calendar.user_id
        try:
            self._broadcaster.broadcast(
                user_id,
                CalendarChanged(calendar_id=calendar.calendar_id, counts=change_set.counts()),
            )
            for event in change_set.added:
                self._broadcaster.broadcast(
                    user_id,
                    EventChanged(
                        uid=event.uid, calendar_id=calendar.calendar_id, change_type="added"
                    ),
                )
            for event in change_set.modified:
                self._broadcaster.broadcast(
                    user_id,
                    EventChanged(
                        uid=event.uid, calendar_id=calendar.calendar_id, change_type="modified"
                    ),
                )
            for uid in change_set.deleted_uids:
                self._broadcaster.broadcast(
                    user_id,
                    EventChanged(uid=uid, calendar_id=calendar.calendar_id, change_type="deleted"),
                )

            if records:
                unread = await self._ledger.unread_count(user_id) if self._ledger else None
                for record in records:
                    self._broadcaster.broadcast(
                        user_id, NotificationMessage(notification=record, unread_count=unread)
                    )
        except Exception:
            logger.exception("Fan-out for calendar %s failed", calendar.calendar_id)

    async def _record_notifications(
        self, calendar: CalendarCollection, change_set: SyncChangeSet
    ) -> list[NotificationRecord]:
        assert self._ledger is not None
        calendar_name = calendar.name or f"Calendar {calendar.calendar_id}"
        records: list[NotificationRecord] = []
        for event in change_set.added:
            records.append(
                await self._ledger.create(
                    remote_added_notification(
                        calendar.user_id,
                        event_id=event.id,
                        event_uid=event.uid,
                        event_title=event.title,
                        calendar_name=calendar_name,
                    )
                )
            )
        for event in change_set.modified:
            records.append(
                await self._ledger.create(
                    remote_updated_notification(
                        calendar.user_id,
                        event_id=event.id,
                        event_uid=event.uid,
                        event_title=event.title,
                        calendar_name=calendar_name,
                    )
                )
            )
        return records
