"""Process-wide SEQUENCE counter cache.

RFC 5545 requires ``SEQUENCE`` to grow with every significant revision of an
event.  ``SequenceManager`` hands out the next value per uid and guarantees
that two concurrent edits of the same event never claim the same number.
The cache is rebuilt lazily from stored events on first use.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from calsync.models import CalendarEvent
from calsync.sync.codec import extract_sequence

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """Read access the warm-up scan needs."""

    async def list_all_events(self) -> list[CalendarEvent]:
        """Return every persisted event across all calendars."""
        ...


@dataclass
class _UidLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SequenceManager:
    """Hands out monotonically increasing SEQUENCE values per uid.

    ``next_sequence`` for the same uid is serialized by a keyed lock; lock
    entries are dropped as soon as nobody holds or waits on them.  Different
    uids never contend.
    """

    def __init__(self, source: EventSource | None = None) -> None:
        self._source = source
        self._cache: dict[str, int] = {}
        self._locks: dict[str, _UidLock] = {}
        self._warm_lock = asyncio.Lock()
        self._warmed = source is None

    @property
    def is_warm(self) -> bool:
        return self._warmed

    def __len__(self) -> int:
        return len(self._cache)

    async def warm_up(self) -> int:
        """Rebuild the cache from every stored event, once.

        Each event contributes the larger of its stored ``sequence`` column and
        the SEQUENCE found in its raw calendar data.  Returns the number of
        cached uids.  Later calls are no-ops.
        """
        async with self._warm_lock:
            if self._warmed:
                return len(self._cache)
            assert self._source is not None
            events = await self._source.list_all_events()
            for event in events:
                extracted = extract_sequence(event.raw_data)
                value = max(event.sequence, extracted or 0)
                if value > self._cache.get(event.uid, -1):
                    self._cache[event.uid] = value
            self._warmed = True
            logger.info("Sequence cache warmed with %d event(s)", len(self._cache))
            return len(self._cache)

    async def _ensure_warm(self) -> None:
        if not self._warmed:
            await self.warm_up()

    def _lookup(self, uid: str, raw_data: str | None) -> int:
        cached = self._cache.get(uid)
        if cached is not None:
            return cached
        extracted = extract_sequence(raw_data)
        if extracted is None:
            return 0
        self._cache[uid] = extracted
        return extracted

    @contextlib.asynccontextmanager
    async def _uid_lock(self, uid: str) -> AsyncIterator[None]:
        entry = self._locks.get(uid)
        if entry is None:
            entry = self._locks[uid] = _UidLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(uid, None)

    async def current_sequence(self, uid: str, raw_data: str | None = None) -> int:
        """Return the cached sequence for *uid*.

        On a cache miss the value is extracted from *raw_data* (and cached);
        with neither available the answer is 0.
        """
        await self._ensure_warm()
        return self._lookup(uid, raw_data)

    async def next_sequence(self, uid: str, raw_data: str | None = None) -> int:
        """Claim and return ``current_sequence(uid) + 1``."""
        await self._ensure_warm()
        async with self._uid_lock(uid):
            value = self._lookup(uid, raw_data) + 1
            self._cache[uid] = value
            return value

    def observe(self, uid: str, sequence: int) -> None:
        """Raise the cached value for *uid* to at least *sequence*."""
        if sequence > self._cache.get(uid, -1):
            self._cache[uid] = sequence

    def forget(self, uid: str) -> None:
        self._cache.pop(uid, None)

    def pending_locks(self) -> int:
        """Number of uid lock entries currently alive."""
        return len(self._locks)
