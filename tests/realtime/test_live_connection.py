"""Unit tests for LiveConnection: state machine, outbound buffer and heartbeat pings."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeTransport, ManualClock, drain

from calsync.errors import BackpressureError, PushChannelError
from calsync.realtime.connection import (
    WS_CLOSE_INTERNAL_ERROR,
    WS_CLOSE_TRY_AGAIN_LATER,
    ConnectionState,
    LiveConnection,
)

pytestmark = pytest.mark.unit


async def test_enqueue_before_authentication_is_refused() -> None:
    connection = LiveConnection(FakeTransport())

    assert connection.enqueue("hello") is False
    assert connection.state == ConnectionState.CONNECTING


async def test_messages_are_written_in_order() -> None:
    transport = FakeTransport()
    connection = LiveConnection(transport)
    connection.authenticate(5)

    for i in range(3):
        assert connection.enqueue(f"m{i}") is True
    await drain()

    assert transport.sent == ["m0", "m1", "m2"]
    assert connection.buffered_bytes == 0
    await connection.close()


async def test_authenticate_twice_is_an_error() -> None:
    connection = LiveConnection(FakeTransport())
    connection.authenticate(5)

    with pytest.raises(PushChannelError):
        connection.authenticate(6)
    await connection.close()


async def test_overflow_closes_with_try_again_later() -> None:
    transport = FakeTransport()
    transport.gate = asyncio.Event()
    connection = LiveConnection(transport, max_buffered_bytes=50)
    connection.authenticate(5)

    assert connection.enqueue("x" * 30) is True
    await drain()
    with pytest.raises(BackpressureError):
        connection.enqueue("y" * 30)

    assert connection.state == ConnectionState.CLOSING
    await drain(10)
    assert connection.state == ConnectionState.CLOSED
    assert transport.closed_with is not None
    assert transport.closed_with[0] == WS_CLOSE_TRY_AGAIN_LATER
    assert isinstance(connection.close_error, BackpressureError)
    assert connection.enqueue("z") is False


async def test_send_failure_closes_connection() -> None:
    transport = FakeTransport()
    transport.fail_sends = True
    connection = LiveConnection(transport)
    connection.authenticate(5)

    connection.enqueue("boom")
    await drain(10)

    assert connection.state == ConnectionState.CLOSED
    assert transport.closed_with is not None
    assert transport.closed_with[0] == WS_CLOSE_INTERNAL_ERROR


async def test_close_is_idempotent_and_runs_callback_once() -> None:
    closed: list[LiveConnection] = []
    transport = FakeTransport()
    connection = LiveConnection(transport)
    connection.set_close_callback(closed.append)
    connection.authenticate(5)

    await connection.close(1000, "bye")
    await connection.close(1001, "again")

    assert closed == [connection]
    assert transport.closed_with == (1000, "bye")
    assert not connection.is_open


async def test_ping_expiry_follows_the_clock() -> None:
    clock = ManualClock()
    connection = LiveConnection(FakeTransport(), clock=clock)
    connection.authenticate(5)
    assert not connection.ping_outstanding

    clock.advance(1)
    connection.mark_ping_sent()
    assert connection.ping_outstanding
    clock.advance(5)
    assert not connection.ping_expired(clock(), timeout_s=10)
    clock.advance(6)
    assert connection.ping_expired(clock(), timeout_s=10)

    connection.mark_alive()
    assert not connection.ping_outstanding
    assert not connection.ping_expired(clock(), timeout_s=10)
    await connection.close()
