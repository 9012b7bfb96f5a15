"""Per-calendar reconciliation between local storage and a remote collection.

``SyncEngine.synchronize`` asks the remote for changes since the stored
cursor, classifies them against the local snapshot, and commits the
classified set together with the new cursor in one transaction.  It either
returns a complete ``SyncChangeSet`` or raises a ``SyncError`` subclass; it
never leaves a half-applied result behind.

``SyncEngine.push_event`` is the opposite direction: it claims the next
SEQUENCE for an edited event, stores it, and PUTs the serialized event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from calsync.config import DeletionConflictPolicy, SyncConfig
from calsync.core.logging import set_calendar_context
from calsync.core.metrics import CalsyncMetrics, get_metrics
from calsync.core.telemetry import sync_span
from calsync.errors import (
    AuthenticationError,
    CalendarNotSyncableError,
    CursorExpiredError,
    MalformedRemoteItemError,
    SyncError,
    SyncTimeoutError,
)
from calsync.models import (
    CalendarCollection,
    CalendarEvent,
    SyncChangeSet,
    SyncConflict,
    SyncMode,
    SyncStatus,
)
from calsync.sync.codec import decode_event, serialize_event
from calsync.sync.remote import CredentialProvider, DeltaResponse, RemoteCollection
from calsync.sync.sequence import SequenceManager
from calsync.sync.store import EventStore

logger = logging.getLogger(__name__)


class PushResult(BaseModel):
    """Outcome of pushing every unsynced event of one calendar."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: int
    pushed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


@dataclass
class _Plan:
    added: list[CalendarEvent] = field(default_factory=list)
    modified: list[CalendarEvent] = field(default_factory=list)
    deleted_uids: list[str] = field(default_factory=list)
    # Local-only rewrites (kept or recreated pending edits).
    rewrites: list[CalendarEvent] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)
    skipped_hrefs: list[str] = field(default_factory=list)

    @property
    def upserts(self) -> list[CalendarEvent]:
        return [*self.added, *self.modified, *self.rewrites]


def _same_revision(local: CalendarEvent, remote: CalendarEvent) -> bool:
    if local.revision_tag is not None or remote.revision_tag is not None:
        return local.revision_tag == remote.revision_tag
    # Servers that omit ETags: fall back to comparing the calendar data.
    return local.raw_data == remote.raw_data


class SyncEngine:
    """Runs synchronize/push cycles for remote calendars."""

    def __init__(
        self,
        *,
        store: EventStore,
        remote: RemoteCollection,
        sequences: SequenceManager,
        credentials: CredentialProvider,
        config: SyncConfig | None = None,
        metrics: CalsyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._sequences = sequences
        self._credentials = credentials
        self._config = config or SyncConfig()
        self._metrics = metrics or get_metrics()
        self._calendar_locks: dict[int, asyncio.Lock] = {}

    @property
    def sequences(self) -> SequenceManager:
        return self._sequences

    def _calendar_lock(self, calendar_id: int) -> asyncio.Lock:
        lock = self._calendar_locks.get(calendar_id)
        if lock is None:
            lock = self._calendar_locks[calendar_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Remote → local
    # ------------------------------------------------------------------

    async def synchronize(
        self,
        calendar_id: int,
        *,
        timeout: float | None = None,
    ) -> SyncChangeSet:
        """Reconcile one calendar with its remote collection.

        Calls for the same calendar are serialized; different calendars run
        in parallel.  *timeout* (default ``sync.timeout_s``) bounds the whole
        call including the wait for the calendar lock.

        Raises
        ------
        CalendarNotSyncableError
            Unknown calendar or no remote URL.
        SyncTimeoutError
            The deadline elapsed; nothing was written.
        SyncError
            Any other failure; nothing was written.
        """
        deadline = timeout if timeout is not None else self._config.timeout_s
        set_calendar_context(calendar_id)
        started = time.monotonic()
        outcome = "error"
        mode: SyncMode = "incremental"
        try:
            with sync_span("synchronize", calendar_id=calendar_id):
                try:
                    async with asyncio.timeout(deadline):
                        async with self._calendar_lock(calendar_id):
                            change_set = await self._synchronize_locked(calendar_id)
                except TimeoutError as exc:
                    outcome = "timeout"
                    raise SyncTimeoutError(
                        f"Sync of calendar {calendar_id} exceeded {deadline}s",
                        calendar_id=calendar_id,
                    ) from exc
            mode = change_set.mode
            outcome = "ok"
        except SyncError as exc:
            if exc.calendar_id is None:
                exc.calendar_id = calendar_id
            raise
        except Exception as exc:
            raise SyncError(
                f"Sync of calendar {calendar_id} failed: {exc}", calendar_id=calendar_id
            ) from exc
        finally:
            self._metrics.record_sync(
                (time.monotonic() - started) * 1000, mode=mode, outcome=outcome
            )
            set_calendar_context(None)

        self._metrics.record_changes(change_set.counts())
        logger.info(
            "Synced calendar %s (%s): %d added, %d modified, %d deleted, %d conflict(s)",
            calendar_id,
            change_set.mode,
            len(change_set.added),
            len(change_set.modified),
            len(change_set.deleted_uids),
            len(change_set.conflicts),
        )
        return change_set

    async def _synchronize_locked(self, calendar_id: int) -> SyncChangeSet:
        calendar = await self._require_remote_calendar(calendar_id)
        assert calendar.remote_url is not None
        credentials = await self._credentials.get_credentials(calendar)
        cursor = calendar.cursor
        mode: SyncMode = "full" if cursor is None else "incremental"

        try:
            delta = await self._remote.fetch_delta(
                calendar.remote_url, cursor, credentials=credentials
            )
        except CursorExpiredError:
            logger.warning(
                "Sync cursor for calendar %s expired/invalid; falling back to full resync",
                calendar_id,
            )
            mode = "full"
            delta = await self._remote.fetch_delta(
                calendar.remote_url, None, credentials=credentials
            )

        local_events = await self._store.list_events(calendar_id)
        plan = self._classify(calendar, local_events, delta, mode)

        stored_ids = await self._store.apply_change_set(
            calendar_id,
            upserts=plan.upserts,
            deleted_uids=plan.deleted_uids,
            new_cursor=delta.new_cursor,
            expected_cursor=cursor,
        )

        for event in plan.upserts:
            self._sequences.observe(event.uid, event.sequence)
        for uid in plan.deleted_uids:
            self._sequences.forget(uid)

        return SyncChangeSet(
            calendar_id=calendar_id,
            mode=mode,
            added=_with_ids(plan.added, stored_ids),
            modified=_with_ids(plan.modified, stored_ids),
            deleted_uids=plan.deleted_uids,
            new_cursor=delta.new_cursor,
            conflicts=plan.conflicts,
            skipped_hrefs=plan.skipped_hrefs,
        )

    async def _require_remote_calendar(self, calendar_id: int) -> CalendarCollection:
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is None:
            raise CalendarNotSyncableError(
                f"Calendar {calendar_id} not found", calendar_id=calendar_id
            )
        if not calendar.is_remote:
            raise CalendarNotSyncableError(
                f"Calendar {calendar_id} is local only", calendar_id=calendar_id
            )
        return calendar

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _classify(
        self,
        calendar: CalendarCollection,
        local_events: Sequence[CalendarEvent],
        delta: DeltaResponse,
        mode: SyncMode,
    ) -> _Plan:
        plan = _Plan()
        by_uid = {event.uid: event for event in local_events}
        by_href = {event.href: event for event in local_events if event.href}

        remote_by_uid: dict[str, CalendarEvent] = {}
        tombstones: list[str] = []
        for item in delta.items:
            if item.deleted:
                tombstones.append(item.href)
                continue
            if item.calendar_data is None:
                logger.warning("Skipping remote item %s without calendar data", item.href)
                plan.skipped_hrefs.append(item.href)
                continue
            try:
                remote_event = decode_event(
                    item.calendar_data,
                    calendar_id=calendar.calendar_id,
                    href=item.href,
                    revision_tag=item.revision_tag,
                )
            except MalformedRemoteItemError as exc:
                logger.warning("Skipping malformed remote item %s: %s", item.href, exc)
                plan.skipped_hrefs.append(item.href)
                continue
            remote_by_uid[remote_event.uid] = remote_event

        for uid, remote_event in remote_by_uid.items():
            existing = by_uid.get(uid)
            if existing is None:
                plan.added.append(remote_event)
                continue
            if _same_revision(existing, remote_event):
                continue
            if existing.has_unpushed_edit or existing.never_pushed:
                self._resolve_edit_conflict(plan, existing, remote_event)
                continue
            plan.modified.append(_adopt_remote(existing, remote_event))

        if mode == "incremental":
            for uid in self._deleted_uids(by_uid, by_href, remote_by_uid, tombstones, delta, plan):
                self._apply_deletion(plan, by_uid[uid])

        return plan

    def _deleted_uids(
        self,
        by_uid: dict[str, CalendarEvent],
        by_href: dict[str, CalendarEvent],
        remote_by_uid: dict[str, CalendarEvent],
        tombstones: list[str],
        delta: DeltaResponse,
        plan: _Plan,
    ) -> list[str]:
        deleted: dict[str, None] = {}
        for href in tombstones:
            event = by_href.get(href)
            if event is not None and event.uid not in remote_by_uid:
                deleted[event.uid] = None

        if delta.complete_listing and self._config.infer_deletions:
            skipped = set(plan.skipped_hrefs)
            for uid, event in by_uid.items():
                if uid in remote_by_uid or uid in deleted:
                    continue
                # Never-pushed events and events hidden behind a malformed
                # remote item are not evidence of a remote deletion.
                if event.href is None or event.href in skipped:
                    continue
                deleted[uid] = None
        return list(deleted)

    def _resolve_edit_conflict(
        self,
        plan: _Plan,
        local: CalendarEvent,
        remote: CalendarEvent,
    ) -> None:
        if local.sequence > remote.sequence:
            kept = local.model_copy(
                update={
                    "revision_tag": remote.revision_tag,
                    "href": remote.href or local.href,
                    "sync_status": (
                        SyncStatus.PENDING
                        if local.sync_status == SyncStatus.LOCAL
                        else local.sync_status
                    ),
                }
            )
            plan.rewrites.append(kept)
            resolution = "local_kept"
        else:
            plan.modified.append(_adopt_remote(local, remote))
            resolution = "remote_won"

        logger.warning(
            "Conflict on %s: local sequence %d vs remote %d (%s)",
            local.uid,
            local.sequence,
            remote.sequence,
            resolution,
        )
        plan.conflicts.append(
            SyncConflict(
                uid=local.uid,
                local_sequence=local.sequence,
                remote_sequence=remote.sequence,
                local_revision_tag=local.revision_tag,
                remote_revision_tag=remote.revision_tag,
                resolution=resolution,
            )
        )

    def _apply_deletion(self, plan: _Plan, local: CalendarEvent) -> None:
        if not local.has_unpushed_edit:
            plan.deleted_uids.append(local.uid)
            return

        policy = self._config.deletion_conflict_policy
        if policy == DeletionConflictPolicy.RECREATE:
            plan.rewrites.append(
                local.model_copy(
                    update={"href": None, "revision_tag": None, "sync_status": SyncStatus.LOCAL}
                )
            )
            resolution = "recreated"
        else:
            plan.deleted_uids.append(local.uid)
            resolution = "dropped"

        logger.warning(
            "Remote deleted %s while it had an unpushed local edit (%s)", local.uid, resolution
        )
        plan.conflicts.append(
            SyncConflict(
                uid=local.uid,
                local_sequence=local.sequence,
                local_revision_tag=local.revision_tag,
                resolution=resolution,
            )
        )

    # ------------------------------------------------------------------
    # Local → remote
    # ------------------------------------------------------------------

    async def push_event(self, event: CalendarEvent, *, created: bool = False) -> CalendarEvent:
        """Push one locally authored change and return the stored result.

        An edit claims ``next_sequence(uid)`` first; a creation keeps its
        sequence (0).  On failure the event is marked ``sync_failed`` with the
        incremented sequence kept, and the typed error is re-raised.
        """
        calendar = await self._require_remote_calendar(event.calendar_id)
        return await self._push(calendar, event, bump=not created)

    async def push_pending(self, calendar_id: int) -> PushResult:
        """Push every ``local``, ``pending`` and ``sync_failed`` event of a calendar.

        Retries of earlier attempts reuse the sequence they already claimed.
        Stops at the first ``AuthenticationError``.
        """
        calendar = await self._require_remote_calendar(calendar_id)
        result = PushResult(calendar_id=calendar_id)
        for event in await self._store.list_events(calendar_id):
            if event.sync_status == SyncStatus.SYNCED:
                continue
            try:
                await self._push(calendar, event, bump=False)
            except AuthenticationError:
                raise
            except SyncError as exc:
                result.failed[event.uid] = str(exc)
                continue
            result.pushed.append(event.uid)

        logger.info(
            "Pushed %d event(s) for calendar %s, %d failed",
            len(result.pushed),
            calendar_id,
            len(result.failed),
        )
        return result

    async def _push(
        self,
        calendar: CalendarCollection,
        event: CalendarEvent,
        *,
        bump: bool,
    ) -> CalendarEvent:
        assert calendar.remote_url is not None
        with sync_span("push_event", calendar_id=calendar.calendar_id):
            if bump:
                sequence = await self._sequences.next_sequence(event.uid, event.raw_data)
            else:
                sequence = event.sequence
            pending = await self._store.save_event(
                event.model_copy(
                    update={
                        "sequence": max(sequence, event.sequence),
                        "sync_status": SyncStatus.PENDING,
                        "sync_error": None,
                        "last_sync_attempt": datetime.now(UTC),
                    }
                )
            )
            self._sequences.observe(pending.uid, pending.sequence)

            calendar_data = serialize_event(pending)
            credentials = await self._credentials.get_credentials(calendar)
            try:
                href, revision_tag = await self._remote.put_item(
                    calendar.remote_url,
                    pending.href,
                    pending.uid,
                    calendar_data,
                    revision_tag=pending.revision_tag,
                    credentials=credentials,
                )
            except SyncError as exc:
                if exc.calendar_id is None:
                    exc.calendar_id = calendar.calendar_id
                logger.warning("Push of %s failed: %s", pending.uid, exc)
                await self._store.mark_sync_failed(calendar.calendar_id, pending.uid, str(exc))
                raise

            await self._store.mark_synced(
                calendar.calendar_id,
                pending.uid,
                revision_tag=revision_tag,
                href=href,
                raw_data=calendar_data,
            )
        return pending.model_copy(
            update={
                "sync_status": SyncStatus.SYNCED,
                "revision_tag": revision_tag,
                "href": href,
                "raw_data": calendar_data,
            }
        )

    async def delete_event(self, event: CalendarEvent) -> None:
        """Delete *event* remotely (when it was ever pushed) and locally."""
        calendar = await self._require_remote_calendar(event.calendar_id)
        assert calendar.remote_url is not None
        if event.href is not None:
            credentials = await self._credentials.get_credentials(calendar)
            await self._remote.delete_item(
                calendar.remote_url,
                event.href,
                revision_tag=event.revision_tag,
                credentials=credentials,
            )
        await self._store.delete_event(calendar.calendar_id, event.uid)
        self._sequences.forget(event.uid)


def _adopt_remote(local: CalendarEvent, remote: CalendarEvent) -> CalendarEvent:
    """Take the remote copy while keeping local identity and a non-decreasing sequence."""
    return remote.model_copy(
        update={"id": local.id, "sequence": max(local.sequence, remote.sequence)}
    )


def _with_ids(events: list[CalendarEvent], stored_ids: dict[str, int]) -> list[CalendarEvent]:
    return [
        event.model_copy(update={"id": stored_ids.get(event.uid, event.id)}) for event in events
    ]
