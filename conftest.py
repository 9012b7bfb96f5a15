"""Root conftest: shared test doubles and PostgreSQL fixtures.

Fixtures and doubles defined here are visible to every test under ``tests/``;
``tests/conftest.py`` re-exports the doubles so test modules can import them
by name.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

from calsync.errors import ApplyError, ConflictError, CursorExpiredError
from calsync.models import CalendarCollection, CalendarEvent, SyncStatus
from calsync.sync.codec import extract_uid
from calsync.sync.remote import DeltaResponse, RemoteCollection, RemoteCredentials, RemoteItem

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "no such container",
    "is already in progress",
    "is dead or marked for removal",
)


# ---------------------------------------------------------------------------
# iCalendar helpers
# ---------------------------------------------------------------------------


def make_ical(
    uid: str,
    *,
    sequence: int | None = 0,
    summary: str = "Meeting",
    start: str = "20260105T090000Z",
    end: str = "20260105T100000Z",
    extra: str = "",
) -> str:
    """Build a minimal single-VEVENT calendar object."""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//tests//tests//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "DTSTAMP:20260101T000000Z",
        f"DTSTART:{start}",
        f"DTEND:{end}",
        f"SUMMARY:{summary}",
    ]
    if sequence is not None:
        lines.append(f"SEQUENCE:{sequence}")
    if extra:
        lines.extend(extra.strip().splitlines())
    lines += ["END:VEVENT", "END:VCALENDAR", ""]
    return "\r\n".join(lines)


# ---------------------------------------------------------------------------
# In-memory event store
# ---------------------------------------------------------------------------


class InMemoryEventStore:
    """``EventStore`` double with the same atomicity and upsert rules as Postgres."""

    def __init__(self) -> None:
        self.calendars: dict[int, CalendarCollection] = {}
        self.events: dict[tuple[int, str], CalendarEvent] = {}
        self.fail_next_apply: Exception | None = None
        self.apply_calls = 0
        self._next_event_id = 1

    def add_calendar(
        self,
        calendar_id: int,
        *,
        user_id: int = 1,
        name: str = "Work",
        remote_url: str | None = "https://dav.example.com/cal/work/",
        cursor: str | None = None,
    ) -> CalendarCollection:
        calendar = CalendarCollection(
            calendar_id=calendar_id,
            user_id=user_id,
            name=name,
            remote_url=remote_url,
            cursor=cursor,
        )
        self.calendars[calendar_id] = calendar
        return calendar

    def put(self, event: CalendarEvent) -> CalendarEvent:
        """Seed an event directly (bypasses the sequence max rule)."""
        if event.id is None:
            event = event.model_copy(update={"id": self._next_event_id})
            self._next_event_id += 1
        self.events[(event.calendar_id, event.uid)] = event
        return event

    def event(self, calendar_id: int, uid: str) -> CalendarEvent | None:
        return self.events.get((calendar_id, uid))

    def uids(self, calendar_id: int) -> set[str]:
        return {uid for (cid, uid) in self.events if cid == calendar_id}

    def _upsert(
        self, target: dict[tuple[int, str], CalendarEvent], event: CalendarEvent
    ) -> CalendarEvent:
        key = (event.calendar_id, event.uid)
        existing = target.get(key)
        if existing is None:
            stored = event.model_copy(update={"id": self._next_event_id})
            self._next_event_id += 1
        else:
            stored = event.model_copy(
                update={"id": existing.id, "sequence": max(existing.sequence, event.sequence)}
            )
        target[key] = stored
        return stored

    async def get_calendar(self, calendar_id: int) -> CalendarCollection | None:
        return self.calendars.get(calendar_id)

    async def list_calendars(self, *, user_id: int | None = None) -> list[CalendarCollection]:
        return [
            c for c in self.calendars.values() if user_id is None or c.user_id == user_id
        ]

    async def list_events(self, calendar_id: int) -> list[CalendarEvent]:
        return [e for (cid, _), e in sorted(self.events.items()) if cid == calendar_id]

    async def list_all_events(self) -> list[CalendarEvent]:
        return list(self.events.values())

    async def apply_change_set(
        self,
        calendar_id: int,
        *,
        upserts: list[CalendarEvent],
        deleted_uids: list[str],
        new_cursor: str,
        expected_cursor: str | None,
    ) -> dict[str, int]:
        self.apply_calls += 1
        staged = dict(self.events)
        stored_ids = {event.uid: self._upsert(staged, event).id for event in upserts}
        if self.fail_next_apply is not None:
            error, self.fail_next_apply = self.fail_next_apply, None
            raise error
        for uid in deleted_uids:
            staged.pop((calendar_id, uid), None)
        calendar = self.calendars[calendar_id]
        if calendar.cursor != expected_cursor:
            raise ApplyError(
                f"Cursor for calendar {calendar_id} changed during sync",
                calendar_id=calendar_id,
            )
        self.events = staged
        self.calendars[calendar_id] = calendar.model_copy(update={"cursor": new_cursor})
        return stored_ids

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        return self._upsert(self.events, event)

    async def mark_synced(
        self,
        calendar_id: int,
        uid: str,
        *,
        revision_tag: str | None,
        href: str,
        raw_data: str,
    ) -> None:
        key = (calendar_id, uid)
        self.events[key] = self.events[key].model_copy(
            update={
                "sync_status": SyncStatus.SYNCED,
                "revision_tag": revision_tag,
                "href": href,
                "raw_data": raw_data,
                "sync_error": None,
            }
        )

    async def mark_sync_failed(self, calendar_id: int, uid: str, error: str) -> None:
        key = (calendar_id, uid)
        self.events[key] = self.events[key].model_copy(
            update={"sync_status": SyncStatus.SYNC_FAILED, "sync_error": error}
        )

    async def delete_event(self, calendar_id: int, uid: str) -> None:
        self.events.pop((calendar_id, uid), None)


# ---------------------------------------------------------------------------
# Scripted remote collection
# ---------------------------------------------------------------------------


class InMemoryRemote(RemoteCollection):
    """A CalDAV-like collection with a change log and sync tokens.

    * ``fetch_delta(url, None)`` returns every object, ``complete_listing=True``.
    * ``fetch_delta(url, "token-N")`` returns objects changed after N plus
      tombstones for removed hrefs.
    * ``listing_only=True`` mimics servers without sync-collection: every call
      returns the full listing with ``complete_listing=True``.
    """

    def __init__(self, *, listing_only: bool = False) -> None:
        self.objects: dict[str, tuple[str, str]] = {}  # href -> (etag, data)
        self.listing_only = listing_only
        self.version = 0
        self._changes: list[tuple[int, str]] = []
        self.fetch_calls: list[str | None] = []
        self.put_calls: list[dict[str, Any]] = []
        self.delete_calls: list[str] = []
        self.fetch_error: Exception | None = None
        self.put_error: Exception | None = None
        self.expire_cursors = False
        self.fetch_delay: float = 0.0
        self.shut_down = False
        self._etag_counter = 0

    def _etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter}"'

    def upsert(self, uid: str, data: str, *, href: str | None = None) -> str:
        href = href or f"/cal/work/{uid}.ics"
        self.version += 1
        self.objects[href] = (self._etag(), data)
        self._changes.append((self.version, href))
        return href

    def remove(self, href: str) -> None:
        self.version += 1
        self.objects.pop(href, None)
        self._changes.append((self.version, href))

    def href_for(self, uid: str) -> str | None:
        for href, (_, data) in self.objects.items():
            if extract_uid(data) == uid:
                return href
        return None

    def _listing(self) -> DeltaResponse:
        items = [
            RemoteItem(href=href, revision_tag=etag, calendar_data=data)
            for href, (etag, data) in sorted(self.objects.items())
        ]
        digest = hashlib.sha256(
            "\n".join(f"{i.href} {i.revision_tag}" for i in items).encode()
        ).hexdigest()
        return DeltaResponse(items=items, new_cursor=f"listing:{digest}", complete_listing=True)

    async def fetch_delta(
        self,
        url: str,
        cursor: str | None,
        *,
        credentials: RemoteCredentials | None = None,
    ) -> DeltaResponse:
        self.fetch_calls.append(cursor)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        if self.listing_only:
            return self._listing()
        if cursor is None:
            items = [
                RemoteItem(href=href, revision_tag=etag, calendar_data=data)
                for href, (etag, data) in sorted(self.objects.items())
            ]
            return DeltaResponse(
                items=items, new_cursor=f"token-{self.version}", complete_listing=True
            )
        if self.expire_cursors or not cursor.startswith("token-"):
            raise CursorExpiredError(f"Sync token {cursor} is no longer valid")
        since = int(cursor.removeprefix("token-"))
        changed = list(dict.fromkeys(href for v, href in self._changes if v > since))
        items: list[RemoteItem] = []
        for href in changed:
            if href in self.objects:
                etag, data = self.objects[href]
                items.append(RemoteItem(href=href, revision_tag=etag, calendar_data=data))
            else:
                items.append(RemoteItem(href=href, deleted=True))
        return DeltaResponse(
            items=items, new_cursor=f"token-{self.version}", complete_listing=False
        )

    async def put_item(
        self,
        url: str,
        href: str | None,
        uid: str,
        calendar_data: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> tuple[str, str | None]:
        self.put_calls.append(
            {"href": href, "uid": uid, "data": calendar_data, "revision_tag": revision_tag}
        )
        if self.put_error is not None:
            raise self.put_error
        target = href or f"/cal/work/{uid}.ics"
        current = self.objects.get(target)
        if current is not None and revision_tag is not None and current[0] != revision_tag:
            raise ConflictError(f"ETag mismatch for {target}", uid=uid)
        self.upsert(uid, calendar_data, href=target)
        return target, self.objects[target][0]

    async def delete_item(
        self,
        url: str,
        href: str,
        *,
        revision_tag: str | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> None:
        self.delete_calls.append(href)
        if href in self.objects:
            self.remove(href)

    async def shutdown(self) -> None:
        self.shut_down = True


# ---------------------------------------------------------------------------
# Push-channel doubles
# ---------------------------------------------------------------------------


class FakeTransport:
    """Records what a ``LiveConnection`` writes; optionally blocks or fails sends."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed_with: tuple[int, str | None] | None = None
        self.fail_sends = False
        self.gate: asyncio.Event | None = None

    async def send_text(self, data: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = (code, reason)


class ManualClock:
    """Monotonic clock the test advances explicitly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def drain(rounds: int = 5) -> None:
    """Let writer tasks and scheduled closes run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def remote() -> InMemoryRemote:
    return InMemoryRemote()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_postgres_pool`` usage provisions a new database with a
    random name, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16")
    container.start()
    try:
        yield container
    finally:
        _retry_testcontainer_stop(container.stop)


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, fully migrated database and asyncpg pool for one test.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calsync.db import Database, ServerAddress
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        server = ServerAddress(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
        )
        db = Database(
            _unique_test_db_name(),
            server,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await asyncio.to_thread(run_migrations, db.dsn())
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
