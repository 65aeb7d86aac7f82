"""
Visit Reminder Notifications

The reminder job hands each claimed attendee to a NotificationSender. A
sender returns False when it skips an attendee it cannot reach, and signals
failure by raising; the job logs the failure and moves on, so a reminder is
delivered at most once.
"""

import logging
from datetime import datetime
from typing import Literal, Protocol
from uuid import UUID

from pydantic import BaseModel

from campus.core.email import send_visit_reminder

logger = logging.getLogger(__name__)


class ReminderSession(BaseModel):
    id: UUID
    title: str
    branch_id: UUID | None
    start_time: datetime


class ReminderAttendee(BaseModel):
    id: UUID
    lead_id: UUID
    parent_email: str | None = None
    parent_name: str | None = None


class VisitReminder(BaseModel):
    """Payload for one reminder to one attendee."""

    window: Literal["24h", "2h"]
    session: ReminderSession
    attendee: ReminderAttendee


class NotificationSender(Protocol):
    async def notify_visit_reminder(self, payload: VisitReminder) -> bool: ...


class NotificationDeliveryError(Exception):
    """Raised when the delivery provider reports a failed send."""


class EmailNotificationSender:
    """Sends visit reminders to the lead's parent email."""

    async def notify_visit_reminder(self, payload: VisitReminder) -> bool:
        attendee = payload.attendee
        if not attendee.parent_email:
            logger.warning(
                f"No email address for attendee {attendee.id}, "
                f"skipping {payload.window} reminder"
            )
            return False

        sent = await send_visit_reminder(
            to_email=attendee.parent_email,
            parent_name=attendee.parent_name,
            session_title=payload.session.title,
            start_time=payload.session.start_time,
            window_label=payload.window,
        )
        if not sent:
            raise NotificationDeliveryError(
                f"Email delivery failed for {payload.window} reminder to attendee {attendee.id}"
            )
        return True
