"""Error taxonomy shared by the sync engine, push channel and API layer."""

from __future__ import annotations


class CalsyncError(Exception):
    """Base class for all calsync errors."""


# ---------------------------------------------------------------------------
# Sync engine
# ---------------------------------------------------------------------------


class SyncError(CalsyncError):
    """A synchronize() or push attempt failed as a whole.

    No local state (events or cursor) has been changed when this is raised
    from ``synchronize()``.
    """

    def __init__(self, message: str, *, calendar_id: int | None = None) -> None:
        self.calendar_id = calendar_id
        super().__init__(message)


class AuthenticationError(SyncError):
    """The remote collection rejected our credentials. Terminal, never retried here."""


class TransientNetworkError(SyncError):
    """Network failure or 5xx response; the caller may retry with backoff."""

    def __init__(
        self,
        message: str,
        *,
        calendar_id: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, calendar_id=calendar_id)


class SyncTimeoutError(SyncError):
    """The caller's deadline elapsed before the change-set was applied."""


class CursorExpiredError(SyncError):
    """The remote no longer accepts the stored cursor; a full resync is required."""


class CalendarNotSyncableError(SyncError):
    """The calendar is unknown or has no remote URL (local only)."""


class ApplyError(SyncError):
    """Writing a classified change-set to local storage failed and was rolled back."""


class ConflictError(SyncError):
    """The remote copy changed underneath a push (revision tag mismatch)."""

    def __init__(
        self,
        message: str,
        *,
        calendar_id: int | None = None,
        uid: str | None = None,
    ) -> None:
        self.uid = uid
        super().__init__(message, calendar_id=calendar_id)


class MalformedRemoteItemError(CalsyncError):
    """A single remote calendar object could not be decoded. Skips that item only."""

    def __init__(self, message: str, *, href: str | None = None) -> None:
        self.href = href
        super().__init__(message)


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------


class PushChannelError(CalsyncError):
    """Base class for live push channel failures."""


class ProtocolError(PushChannelError):
    """An inbound message was malformed or of an unknown type. The message is dropped."""


class HeartbeatTimeoutError(PushChannelError):
    """A connection sent nothing back within the heartbeat timeout."""


class BackpressureError(PushChannelError):
    """A connection's outbound buffer exceeded its byte cap."""
