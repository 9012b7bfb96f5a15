"""Pydantic envelopes and payloads for the calsync REST API.

Successful responses are ``{"data": ..., "meta": {...}}``; failures are
``{"error": {"code", "message"[, "calendar_id"]}}``.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field, computed_field

from calsync.models import SyncChangeSet

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: dict[str, Any] = Field(default_factory=dict)


class PaginationMeta(BaseModel):
    total: int
    offset: int
    limit: int

    @computed_field
    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class PaginatedResponse(BaseModel, Generic[T]):
    data: list[T]
    meta: PaginationMeta


class ErrorDetail(BaseModel):
    code: str
    message: str
    calendar_id: int | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class UnreadCount(BaseModel):
    unread_count: int


class MarkAllReadResult(BaseModel):
    updated: int


class SyncSummary(BaseModel):
    """Per-kind counts of one synchronize call."""

    calendar_id: int
    mode: str
    added: int
    modified: int
    deleted: int
    conflicts: int = 0
    skipped: int = 0

    @classmethod
    def from_change_set(cls, calendar_id: int, change_set: SyncChangeSet) -> SyncSummary:
        return cls(
            calendar_id=calendar_id,
            mode=change_set.mode,
            conflicts=len(change_set.conflicts),
            skipped=len(change_set.skipped_hrefs),
            **change_set.counts(),
        )


class HealthResponse(BaseModel):
    status: str
    connections: int = 0
    users: int = 0
