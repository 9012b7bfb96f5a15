"""Calendar sync endpoints.

``POST /api/calendars/{id}/sync`` runs one synchronize and reports what
changed; ``POST /api/calendars/{id}/push`` pushes every unsynced local event.
Sync failures are mapped to HTTP statuses by ``calsync.api.middleware``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from calsync.api.models import ApiResponse, SyncSummary
from calsync.sync.engine import PushResult
from calsync.sync.service import CalendarSyncService

router = APIRouter(prefix="/api/calendars", tags=["calendars"])


def _get_sync_service() -> CalendarSyncService:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("CalendarSyncService not initialized")


@router.post("/{calendar_id}/sync", response_model=ApiResponse[SyncSummary])
async def sync_calendar(
    calendar_id: int,
    service: CalendarSyncService = Depends(_get_sync_service),
) -> ApiResponse[SyncSummary]:
    change_set = await service.sync_calendar(calendar_id)
    return ApiResponse[SyncSummary](data=SyncSummary.from_change_set(calendar_id, change_set))


@router.post("/{calendar_id}/push", response_model=ApiResponse[PushResult])
async def push_calendar(
    calendar_id: int,
    service: CalendarSyncService = Depends(_get_sync_service),
) -> ApiResponse[PushResult]:
    result = await service.engine.push_pending(calendar_id)
    return ApiResponse[PushResult](data=result)
