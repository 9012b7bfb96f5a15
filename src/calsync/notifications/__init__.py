"""Durable user notifications and their typed builders."""

from calsync.notifications.builders import (
    attendee_response_notification,
    cancellation_notification,
    invitation_notification,
    reminder_notification,
    remote_added_notification,
    remote_updated_notification,
    resource_confirmed_notification,
    resource_denied_notification,
    update_notification,
)
from calsync.notifications.ledger import NotificationLedger

__all__ = [
    "NotificationLedger",
    "attendee_response_notification",
    "cancellation_notification",
    "invitation_notification",
    "reminder_notification",
    "remote_added_notification",
    "remote_updated_notification",
    "resource_confirmed_notification",
    "resource_denied_notification",
    "update_notification",
]
