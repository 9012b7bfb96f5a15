"""Unit tests for best-effort broadcast to a user's live connections."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeTransport, drain

from calsync.realtime.broadcaster import Broadcaster
from calsync.realtime.connection import LiveConnection
from calsync.realtime.messages import CalendarChanged, EventChanged
from calsync.realtime.registry import ConnectionRegistry

pytestmark = pytest.mark.unit


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


def _connect(
    registry: ConnectionRegistry, user_id: int, **kwargs
) -> tuple[LiveConnection, FakeTransport]:
    transport = FakeTransport()
    connection = LiveConnection(transport, **kwargs)
    connection.authenticate(user_id)
    registry.register(user_id, connection)
    return connection, transport


def _types(transport: FakeTransport) -> list[str]:
    return [json.loads(m)["type"] for m in transport.sent]


async def test_no_connections_delivers_nothing(registry: ConnectionRegistry) -> None:
    assert Broadcaster(registry).broadcast(1, CalendarChanged(calendar_id=3)) == 0


async def test_reaches_every_connection_of_the_user_only(registry: ConnectionRegistry) -> None:
    _, a = _connect(registry, 1)
    _, b = _connect(registry, 1)
    _, other = _connect(registry, 2)

    delivered = Broadcaster(registry).broadcast(
        1, EventChanged(uid="abc", calendar_id=3, change_type="added")
    )
    await drain()

    assert delivered == 2
    assert _types(a) == _types(b) == ["event_changed"]
    assert json.loads(a.sent[0]) == {
        "type": "event_changed",
        "uid": "abc",
        "calendar_id": 3,
        "change_type": "added",
    }
    assert other.sent == []
    await registry.close_all()


async def test_exclude_skips_the_sender(registry: ConnectionRegistry) -> None:
    sender, sender_transport = _connect(registry, 1)
    _, peer = _connect(registry, 1)

    delivered = Broadcaster(registry).broadcast(
        1, EventChanged(uid="abc", calendar_id=3, change_type="deleted"), exclude=sender
    )
    await drain()

    assert delivered == 1
    assert sender_transport.sent == []
    assert _types(peer) == ["event_changed"]
    await registry.close_all()


async def test_closed_connection_is_skipped(registry: ConnectionRegistry) -> None:
    closed, _ = _connect(registry, 1)
    _connect(registry, 1)
    await closed.close()

    assert Broadcaster(registry).broadcast(1, CalendarChanged(calendar_id=3)) == 1
    await registry.close_all()


async def test_overflowing_connection_does_not_block_others(
    registry: ConnectionRegistry,
) -> None:
    slow, slow_transport = _connect(registry, 1, max_buffered_bytes=10)
    slow_transport.gate = asyncio.Event()
    _, fast = _connect(registry, 1)

    delivered = Broadcaster(registry).broadcast(1, CalendarChanged(calendar_id=3))
    await drain(10)

    assert delivered == 1
    assert _types(fast) == ["calendar_changed"]
    assert not slow.is_open
    assert registry.connections(1) != [] and slow not in registry.connections(1)
    await registry.close_all()


async def test_unserializable_message_is_dropped(registry: ConnectionRegistry) -> None:
    _, transport = _connect(registry, 1)

    class _Broken:
        type = "broken"

        def model_dump_json(self, **kwargs) -> str:
            raise ValueError("cannot encode")

    assert Broadcaster(registry).broadcast(1, _Broken()) == 0  # type: ignore[arg-type]
    await drain()
    assert transport.sent == []
    await registry.close_all()
