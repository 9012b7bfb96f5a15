"""Remote calendar synchronization."""

from calsync.sync.engine import PushResult, SyncEngine
from calsync.sync.remote import CalDAVCollection, RemoteCollection, StaticCredentialProvider
from calsync.sync.sequence import SequenceManager
from calsync.sync.store import EventStore, PostgresEventStore

__all__ = [
    "CalDAVCollection",
    "EventStore",
    "PostgresEventStore",
    "PushResult",
    "RemoteCollection",
    "SequenceManager",
    "StaticCredentialProvider",
    "SyncEngine",
]
