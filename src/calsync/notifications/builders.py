"""Typed constructors for each kind of calendar notification.

Each builder only shapes a ``NotificationCreate``; persisting it is the
ledger's job (``await ledger.create(invitation_notification(...))``).
"""

from __future__ import annotations

from typing import Literal

from calsync.models import NotificationCreate, NotificationPriority, NotificationType

AttendeeResponse = Literal["accepted", "declined", "tentative"]

_RESPONSE_TYPES: dict[str, tuple[NotificationType, str]] = {
    "accepted": (NotificationType.INVITATION_ACCEPTED, "accepted"),
    "declined": (NotificationType.INVITATION_DECLINED, "declined"),
    "tentative": (NotificationType.INVITATION_TENTATIVE, "tentatively accepted"),
}


def invitation_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    from_user_id: int | None = None,
    from_user_name: str,
    from_user_email: str | None = None,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_INVITATION,
        title="New Event Invitation",
        message=f'{from_user_name} invited you to "{event_title}"',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
        related_user_id=from_user_id,
        related_user_name=from_user_name,
        related_user_email=from_user_email,
        requires_action=True,
    )


def update_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    from_user_id: int | None = None,
    from_user_name: str,
    from_user_email: str | None = None,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_UPDATE,
        title="Event Updated",
        message=f'{from_user_name} updated "{event_title}"',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
        related_user_id=from_user_id,
        related_user_name=from_user_name,
        related_user_email=from_user_email,
    )


def cancellation_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    from_user_id: int | None = None,
    from_user_name: str,
    from_user_email: str | None = None,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_CANCELLATION,
        title="Event Cancelled",
        message=f'{from_user_name} cancelled "{event_title}"',
        priority=NotificationPriority.HIGH,
        related_event_id=event_id,
        related_event_uid=event_uid,
        related_user_id=from_user_id,
        related_user_name=from_user_name,
        related_user_email=from_user_email,
    )


def attendee_response_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    response: AttendeeResponse,
    attendee_id: int | None = None,
    attendee_name: str,
    attendee_email: str | None = None,
) -> NotificationCreate:
    """Tell an organizer how an attendee answered their invitation."""
    try:
        notification_type, verb = _RESPONSE_TYPES[response]
    except KeyError:
        raise ValueError(f"Unknown attendee response: {response!r}") from None
    return NotificationCreate(
        user_id=user_id,
        type=notification_type,
        title="Invitation Response",
        message=f'{attendee_name} {verb} your invitation to "{event_title}"',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
        related_user_id=attendee_id,
        related_user_name=attendee_name,
        related_user_email=attendee_email,
    )


def reminder_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    minutes_until_start: int,
) -> NotificationCreate:
    """Upcoming-event reminder; lead times over an hour are shown in whole hours."""
    if minutes_until_start <= 60:
        lead = f"{minutes_until_start} minutes"
    else:
        lead = f"{minutes_until_start // 60} hours"
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_REMINDER,
        title="Upcoming Event",
        message=f'Your event "{event_title}" starts in {lead}',
        priority=NotificationPriority.HIGH,
        related_event_id=event_id,
        related_event_uid=event_uid,
    )


def resource_confirmed_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    resource_name: str,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.RESOURCE_CONFIRMED,
        title="Resource Confirmed",
        message=f'Resource "{resource_name}" confirmed for "{event_title}"',
        priority=NotificationPriority.LOW,
        related_event_id=event_id,
        related_event_uid=event_uid,
    )


def resource_denied_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    resource_name: str,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.RESOURCE_DENIED,
        title="Resource Unavailable",
        message=f'Resource "{resource_name}" is unavailable for "{event_title}"',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
        requires_action=True,
    )


def remote_added_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    calendar_name: str,
) -> NotificationCreate:
    """An event appeared on the remote side of a synced calendar."""
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_UPDATE,
        title="New Event Added",
        message=f'"{event_title}" was added to calendar "{calendar_name}"',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
    )


def remote_updated_notification(
    user_id: int,
    *,
    event_id: int | None,
    event_uid: str,
    event_title: str,
    calendar_name: str,
) -> NotificationCreate:
    return NotificationCreate(
        user_id=user_id,
        type=NotificationType.EVENT_UPDATE,
        title="Event Updated",
        message=f'"{event_title}" in calendar "{calendar_name}" was updated',
        priority=NotificationPriority.MEDIUM,
        related_event_id=event_id,
        related_event_uid=event_uid,
    )
