"""Live push channel: per-user connection registry, fan-out and WebSocket endpoint."""

from calsync.realtime.broadcaster import Broadcaster
from calsync.realtime.connection import LiveConnection
from calsync.realtime.registry import ConnectionRegistry

__all__ = ["Broadcaster", "ConnectionRegistry", "LiveConnection"]
