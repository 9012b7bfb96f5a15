"""Unit tests for CalendarSyncService: fan-out after sync and background requests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

import pytest
from conftest import InMemoryEventStore, InMemoryRemote, make_ical

from calsync.errors import AuthenticationError, CalendarNotSyncableError
from calsync.models import NotificationCreate, NotificationRecord, NotificationType
from calsync.realtime.messages import CalendarChanged, EventChanged, NotificationMessage
from calsync.sync.engine import SyncEngine
from calsync.sync.remote import StaticCredentialProvider
from calsync.sync.sequence import SequenceManager
from calsync.sync.service import CalendarSyncService

pytestmark = pytest.mark.unit

OWNER = 42


class _RecordingLedger:
    def __init__(self, *, fail: bool = False) -> None:
        self.created: list[NotificationRecord] = []
        self.fail = fail

    async def create(self, notification: NotificationCreate) -> NotificationRecord:
        if self.fail:
            raise RuntimeError("ledger offline")
        record = NotificationRecord(
            id=len(self.created) + 1,
            created_at=datetime.now(UTC),
            **notification.model_dump(),
        )
        self.created.append(record)
        return record

    async def unread_count(self, user_id: int) -> int:
        return sum(1 for r in self.created if r.user_id == user_id and not r.is_read)


class _RecordingBroadcaster:
    def __init__(self) -> None:
        self.sent: list[tuple[int, Any]] = []

    def broadcast(self, user_id: int, message: Any, *, exclude: Any = None) -> int:
        self.sent.append((user_id, message))
        return 1

    def of_type(self, kind: type) -> list[Any]:
        return [m for _, m in self.sent if isinstance(m, kind)]


@pytest.fixture
def store() -> InMemoryEventStore:
    store = InMemoryEventStore()
    store.add_calendar(1, user_id=OWNER, name="Work")
    return store


def _service(
    store: InMemoryEventStore,
    remote: InMemoryRemote,
    *,
    ledger: Any = None,
    broadcaster: Any = None,
) -> CalendarSyncService:
    engine = SyncEngine(
        store=store,
        remote=remote,
        sequences=SequenceManager(store),
        credentials=StaticCredentialProvider(),
    )
    return CalendarSyncService(engine=engine, store=store, ledger=ledger, broadcaster=broadcaster)


async def test_sync_fans_out_to_owner(store: InMemoryEventStore, remote: InMemoryRemote) -> None:
    ledger = _RecordingLedger()
    broadcaster = _RecordingBroadcaster()
    service = _service(store, remote, ledger=ledger, broadcaster=broadcaster)
    remote.upsert("a", make_ical("a", summary="Standup"))
    remote.upsert("gone", make_ical("gone"))
    await service.sync_calendar(1)
    ledger.created.clear()
    broadcaster.sent.clear()

    remote.upsert("b", make_ical("b", summary="Lunch"))
    remote.upsert("a", make_ical("a", sequence=1, summary="Standup v2"))
    remote.remove("/cal/work/gone.ics")
    change_set = await service.sync_calendar(1)

    assert change_set.counts() == {"added": 1, "modified": 1, "deleted": 1}
    assert {user_id for user_id, _ in broadcaster.sent} == {OWNER}

    [calendar_changed] = broadcaster.of_type(CalendarChanged)
    assert calendar_changed.calendar_id == 1
    assert calendar_changed.counts == {"added": 1, "modified": 1, "deleted": 1}

    changes = {(m.uid, m.change_type) for m in broadcaster.of_type(EventChanged)}
    assert changes == {("b", "added"), ("a", "modified"), ("gone", "deleted")}

    assert [r.title for r in ledger.created] == ["New Event Added", "Event Updated"]
    assert ledger.created[0].message == '"Lunch" was added to calendar "Work"'
    assert ledger.created[1].message == '"Standup v2" in calendar "Work" was updated'
    assert all(r.type == NotificationType.EVENT_UPDATE for r in ledger.created)
    assert ledger.created[0].related_event_id == store.events[(1, "b")].id
    assert ledger.created[1].related_event_id == store.events[(1, "a")].id
    assert change_set.added[0].id is not None
    assert change_set.added[0].id == store.events[(1, "b")].id

    notifications = broadcaster.of_type(NotificationMessage)
    assert [n.notification.id for n in notifications] == [1, 2]
    assert notifications[-1].unread_count == 2


async def test_failed_sync_broadcasts_nothing(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    broadcaster = _RecordingBroadcaster()
    service = _service(store, remote, broadcaster=broadcaster)
    remote.fetch_error = AuthenticationError("denied")

    with pytest.raises(AuthenticationError):
        await service.sync_calendar(1)
    assert broadcaster.sent == []


async def test_sync_without_changes_broadcasts_nothing(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    broadcaster = _RecordingBroadcaster()
    service = _service(store, remote, broadcaster=broadcaster)
    remote.upsert("a", make_ical("a"))
    await service.sync_calendar(1)
    broadcaster.sent.clear()

    change_set = await service.sync_calendar(1)

    assert change_set.is_empty
    assert broadcaster.sent == []


async def test_calendar_lookup_failure_after_sync_is_contained(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    broadcaster = _RecordingBroadcaster()
    service = _service(store, remote, broadcaster=broadcaster)
    remote.upsert("a", make_ical("a"))
    synchronize = service.engine.synchronize

    async def lookup_fails(calendar_id: int) -> None:
        raise ConnectionResetError("connection lost")

    async def sync_then_lose_store(calendar_id: int, **kwargs: Any):
        change_set = await synchronize(calendar_id, **kwargs)
        store.get_calendar = lookup_fails
        return change_set

    service.engine.synchronize = sync_then_lose_store

    change_set = await service.sync_calendar(1)

    assert [e.uid for e in change_set.added] == ["a"]
    assert store.calendars[1].cursor == change_set.new_cursor
    assert broadcaster.sent == []


async def test_ledger_failure_does_not_fail_sync(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    broadcaster = _RecordingBroadcaster()
    service = _service(
        store, remote, ledger=_RecordingLedger(fail=True), broadcaster=broadcaster
    )
    remote.upsert("a", make_ical("a"))

    change_set = await service.sync_calendar(1)

    assert [e.uid for e in change_set.added] == ["a"]
    assert len(broadcaster.of_type(CalendarChanged)) == 1
    assert broadcaster.of_type(NotificationMessage) == []


async def test_sync_user_covers_owned_remote_calendars(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    store.add_calendar(2, user_id=OWNER, remote_url=None)
    store.add_calendar(3, user_id=OWNER, remote_url="https://dav.example.com/cal/home/")
    store.add_calendar(4, user_id=7)
    remote.upsert("a", make_ical("a"))
    service = _service(store, remote)

    outcomes = await service.sync_user(OWNER)

    assert [o.calendar_id for o in outcomes] == [1, 3]
    assert all(o.ok for o in outcomes)
    assert outcomes[0].counts == {"added": 1, "modified": 0, "deleted": 0}


async def test_sync_user_reports_per_calendar_errors(
    store: InMemoryEventStore, remote: InMemoryRemote
) -> None:
    remote.fetch_error = AuthenticationError("denied")
    service = _service(store, remote)

    [outcome] = await service.sync_user(OWNER)

    assert outcome.ok is False
    assert outcome.error == "denied"


class TestRequestSync:
    async def test_runs_in_background_and_deduplicates(
        self, store: InMemoryEventStore, remote: InMemoryRemote
    ) -> None:
        remote.upsert("a", make_ical("a"))
        service = _service(store, remote)

        assert await service.request_sync(1, user_id=OWNER) is True
        assert await service.request_sync(1, user_id=OWNER) is False

        await asyncio.gather(*list(service._background))
        assert store.uids(1) == {"a"}
        assert await service.request_sync(1) is True
        await service.shutdown()

    @pytest.mark.parametrize(
        ("calendar_id", "user_id"),
        [(99, OWNER), (1, 7), (2, OWNER)],
        ids=["unknown", "not-owner", "local-only"],
    )
    async def test_rejects_unsyncable_calendars(
        self,
        store: InMemoryEventStore,
        remote: InMemoryRemote,
        calendar_id: int,
        user_id: int,
    ) -> None:
        store.add_calendar(2, user_id=OWNER, remote_url=None)
        service = _service(store, remote)

        with pytest.raises(CalendarNotSyncableError):
            await service.request_sync(calendar_id, user_id=user_id)

    async def test_background_failure_is_contained(
        self, store: InMemoryEventStore, remote: InMemoryRemote
    ) -> None:
        remote.fetch_error = AuthenticationError("denied")
        service = _service(store, remote)

        assert await service.request_sync(1) is True
        await asyncio.gather(*list(service._background))

        assert store.calendars[1].cursor is None

    async def test_shutdown_cancels_pending_syncs(
        self, store: InMemoryEventStore, remote: InMemoryRemote
    ) -> None:
        remote.fetch_delay = 10.0
        service = _service(store, remote)
        await service.request_sync(1)

        await service.shutdown()

        assert service._background == set()
        assert store.calendars[1].cursor is None
