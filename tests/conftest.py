"""Shared test fixtures for the calsync test suite.

The canonical definitions live in the root ``conftest.py``.  This file
re-exports them so test modules can write ``from conftest import ...``.
"""

from __future__ import annotations

from conftest import (  # noqa: F401
    FakeTransport,
    InMemoryEventStore,
    InMemoryRemote,
    ManualClock,
    clock,
    drain,
    event_store,
    make_ical,
    remote,
)

__all__ = [
    "FakeTransport",
    "InMemoryEventStore",
    "InMemoryRemote",
    "ManualClock",
    "clock",
    "drain",
    "event_store",
    "make_ical",
    "remote",
]
