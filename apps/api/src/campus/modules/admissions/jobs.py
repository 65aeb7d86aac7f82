"""
Admissions Background Jobs

Scheduled tasks for taster visit sessions:
1. Send reminders 24 hours and 2 hours before a session starts
2. Sweep finished sessions for no-shows and open follow-up tasks

Design Principles:
- Every session is processed exactly once per pass, even with several
  workers running the same tick: a session is claimed with a conditional
  UPDATE on its claim column, and only the worker whose UPDATE matched a
  row does the work
- Claim and attendee updates for a session share one transaction
- Reminders are sent only after that transaction commits
- Jobs continue processing even if individual sessions fail

Schedule:
- One tick runs every minute: 24h reminders, 2h reminders, no-show sweep
- The tick can also be triggered manually via the debug endpoints

Error Handling:
- A failed session transaction is rolled back and logged; the session stays
  unclaimed and is picked up again on the next tick
- A failed notification is logged and not retried (at-most-once delivery)
- A failing pass does not stop the passes after it
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import InstrumentedAttribute

from campus.core.clock import Clock, utc_now
from campus.core.config import settings
from campus.core.database import async_session_maker
from campus.core.scheduler import EveryFunc, every
from campus.modules.admissions import repository, tasks
from campus.modules.admissions.models import VisitAttendee, VisitSession
from campus.modules.admissions.notifications import (
    EmailNotificationSender,
    NotificationSender,
    ReminderAttendee,
    ReminderSession,
    VisitReminder,
)

logger = logging.getLogger(__name__)

# Job IDs for registration and manual triggering
JOB_ID_AUTOMATION_TICK = "admissions_automation_tick"

SessionFactory = async_sessionmaker[AsyncSession]


@dataclass(frozen=True)
class ReminderWindow:
    start: datetime
    end: datetime


def compute_reminder_window(
    now: datetime,
    hours_ahead: int,
    tolerance_minutes: int,
) -> ReminderWindow:
    """Sessions starting in [now + hours - tolerance, now + hours + tolerance] are due."""
    target = now + timedelta(hours=hours_ahead)
    tolerance = timedelta(minutes=tolerance_minutes)
    return ReminderWindow(start=target - tolerance, end=target + tolerance)


@dataclass(frozen=True, eq=False)
class ReminderOffset:
    """
    One reminder lead time and the columns that track it.

    session_stamp_field is the VisitSession claim column for the pass;
    attendee_notified_field is the VisitAttendee column recording delivery.
    """

    label: str
    hours: int
    session_stamp_field: InstrumentedAttribute
    attendee_notified_field: InstrumentedAttribute


REMINDER_24H = ReminderOffset(
    label="24h",
    hours=24,
    session_stamp_field=VisitSession.reminder_24h_stamped_at,
    attendee_notified_field=VisitAttendee.reminder_24h_notified_at,
)

REMINDER_2H = ReminderOffset(
    label="2h",
    hours=2,
    session_stamp_field=VisitSession.reminder_2h_stamped_at,
    attendee_notified_field=VisitAttendee.reminder_2h_notified_at,
)


def _needs_reminder(attendee: VisitAttendee, offset: ReminderOffset) -> bool:
    return (
        attendee.attended_at is None
        and getattr(attendee, offset.attendee_notified_field.key) is None
    )


def _build_reminder(
    offset: ReminderOffset,
    visit_session: VisitSession,
    attendee: VisitAttendee,
) -> VisitReminder:
    lead = attendee.lead
    parent_name = f"{lead.parent_first_name} {lead.parent_last_name}".strip() if lead else None
    return VisitReminder(
        window=offset.label,
        session=ReminderSession(
            id=visit_session.id,
            title=visit_session.title,
            branch_id=visit_session.branch_id,
            start_time=visit_session.start_time,
        ),
        attendee=ReminderAttendee(
            id=attendee.id,
            lead_id=attendee.lead_id,
            parent_email=lead.parent_email if lead else None,
            parent_name=parent_name or None,
        ),
    )


async def _claim_session_reminder(
    visit_session: VisitSession,
    offset: ReminderOffset,
    now: datetime,
    session_factory: SessionFactory,
) -> list[VisitReminder] | None:
    """
    Claim one session for a reminder pass and stamp its eligible attendees.

    Args:
        visit_session: Session loaded with attendees and their leads
        offset: The reminder being sent
        now: Claim and notification timestamp
        session_factory: Source of database sessions

    Returns:
        Reminders to send, or None if another worker claimed the session
    """
    eligible = [a for a in visit_session.attendees if _needs_reminder(a, offset)]

    async with session_factory() as db:
        try:
            claimed = await repository.claim_session(
                db, visit_session.id, offset.session_stamp_field, now
            )
            if not claimed:
                await db.rollback()
                logger.debug(f"Visit session {visit_session.id} already claimed for {offset.label} reminder")
                return None

            # Attendees who checked in since the snapshot are not stamped
            stamped = set(
                await repository.mark_attendees_notified(
                    db, [a.id for a in eligible], offset.attendee_notified_field, now
                )
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    return [_build_reminder(offset, visit_session, a) for a in eligible if a.id in stamped]


async def send_visit_reminders(
    offset: ReminderOffset,
    *,
    now: datetime,
    session_factory: SessionFactory | None = None,
    notifier: NotificationSender | None = None,
    tolerance_minutes: int | None = None,
) -> dict[str, Any]:
    """
    Send one reminder pass for sessions starting offset.hours from now.

    The job is idempotent - a claimed session is never selected again for
    the same offset, and attendees are stamped before anything is sent.

    Returns:
        Dict with job execution summary including:
        - executed_at: When the job ran
        - window: Start-time window that was searched
        - sessions_found / sessions_claimed / sessions_skipped
        - notifications_sent / notifications_skipped / notification_failures
        - total_errors: Number of sessions whose transaction failed
    """
    session_factory = session_factory or async_session_maker
    notifier = notifier or EmailNotificationSender()
    if tolerance_minutes is None:
        tolerance_minutes = settings.reminder_tolerance_minutes

    window = compute_reminder_window(now, offset.hours, tolerance_minutes)

    logger.info(
        f"Starting {offset.label} visit reminder job. "
        f"Window: {window.start.isoformat()} - {window.end.isoformat()}"
    )

    results: dict[str, Any] = {
        "executed_at": now.isoformat(),
        "window": {"start": window.start.isoformat(), "end": window.end.isoformat()},
        "sessions_found": 0,
        "sessions_claimed": 0,
        "sessions_skipped": 0,
        "notifications_sent": 0,
        "notifications_skipped": 0,
        "notification_failures": 0,
        "total_errors": 0,
    }

    async with session_factory() as db:
        sessions = await repository.get_sessions_in_reminder_window(
            db, offset.session_stamp_field, window.start, window.end
        )

    results["sessions_found"] = len(sessions)
    logger.info(f"Found {len(sessions)} visit sessions needing {offset.label} reminder")

    for visit_session in sessions:
        try:
            reminders = await _claim_session_reminder(visit_session, offset, now, session_factory)
        except Exception as e:
            logger.error(
                f"Error claiming {offset.label} reminder for visit session {visit_session.id}: {e}",
                exc_info=True,
            )
            results["total_errors"] += 1
            continue

        if reminders is None:
            results["sessions_skipped"] += 1
            continue

        results["sessions_claimed"] += 1

        for reminder in reminders:
            try:
                if await notifier.notify_visit_reminder(reminder):
                    results["notifications_sent"] += 1
                else:
                    results["notifications_skipped"] += 1
            except Exception as e:
                logger.error(
                    f"Failed to send {offset.label} reminder to attendee {reminder.attendee.id} "
                    f"for visit session {visit_session.id}: {e}",
                    exc_info=True,
                )
                results["notification_failures"] += 1

    logger.info(
        f"{offset.label} visit reminder job completed. "
        f"Claimed: {results['sessions_claimed']}, Sent: {results['notifications_sent']}, "
        f"Errors: {results['total_errors']}"
    )

    return results


async def _sweep_session(
    visit_session: VisitSession,
    now: datetime,
    session_factory: SessionFactory,
) -> dict[str, int] | None:
    """
    Claim one finished session and mark its no-shows.

    Claim, no-show stamps and follow-up tasks are committed together; if
    anything fails the whole session is rolled back, claim included.

    Returns:
        Counts of no-shows marked and tasks created, or None if another
        worker claimed the session
    """
    async with session_factory() as db:
        try:
            claimed = await repository.claim_session(
                db, visit_session.id, VisitSession.no_show_sweep_completed_at, now
            )
            if not claimed:
                await db.rollback()
                logger.debug(f"Visit session {visit_session.id} already swept")
                return None

            no_shows_marked = 0
            tasks_created = 0
            for attendee in await repository.get_unattended_attendees(db, visit_session.id):
                if not await repository.mark_attendee_no_show(db, attendee.id, now):
                    continue
                no_shows_marked += 1

                await tasks.create_no_show_follow_up(
                    db, lead_id=attendee.lead_id, session=visit_session, now=now
                )
                tasks_created += 1

            await db.commit()
        except Exception:
            await db.rollback()
            raise

    return {"no_shows_marked": no_shows_marked, "tasks_created": tasks_created}


async def sweep_no_shows(
    *,
    now: datetime,
    session_factory: SessionFactory | None = None,
    delay_hours: int | None = None,
) -> dict[str, Any]:
    """
    Mark no-shows for sessions that ended at least delay_hours ago.

    Every attendee who did not check in gets no_show_at and one
    "taster-no-show" follow-up task. A swept session is never selected
    again.

    Returns:
        Dict with job execution summary including:
        - executed_at: When the job ran
        - threshold: Sessions ending at or before this time were considered
        - sessions_found / sessions_swept / sessions_skipped
        - no_shows_marked / tasks_created
        - total_errors: Number of sessions whose transaction failed
    """
    session_factory = session_factory or async_session_maker
    if delay_hours is None:
        delay_hours = settings.no_show_sweep_delay_hours

    threshold = now - timedelta(hours=delay_hours)

    logger.info(f"Starting no-show sweep job. Threshold: {threshold.isoformat()}")

    results: dict[str, Any] = {
        "executed_at": now.isoformat(),
        "threshold": threshold.isoformat(),
        "sessions_found": 0,
        "sessions_swept": 0,
        "sessions_skipped": 0,
        "no_shows_marked": 0,
        "tasks_created": 0,
        "total_errors": 0,
    }

    async with session_factory() as db:
        sessions = await repository.get_sessions_due_for_no_show_sweep(db, threshold)

    results["sessions_found"] = len(sessions)
    logger.info(f"Found {len(sessions)} visit sessions due for no-show sweep")

    for visit_session in sessions:
        try:
            counts = await _sweep_session(visit_session, now, session_factory)
        except Exception as e:
            logger.error(
                f"Error sweeping no-shows for visit session {visit_session.id}: {e}",
                exc_info=True,
            )
            results["total_errors"] += 1
            continue

        if counts is None:
            results["sessions_skipped"] += 1
            continue

        results["sessions_swept"] += 1
        results["no_shows_marked"] += counts["no_shows_marked"]
        results["tasks_created"] += counts["tasks_created"]

    logger.info(
        f"No-show sweep job completed. Swept: {results['sessions_swept']}, "
        f"No-shows: {results['no_shows_marked']}, Errors: {results['total_errors']}"
    )

    return results


async def run_admissions_automation(
    *,
    clock: Clock = utc_now,
    session_factory: SessionFactory | None = None,
    notifier: NotificationSender | None = None,
) -> dict[str, Any]:
    """
    One automation tick: 24h reminders, 2h reminders, then the no-show sweep.

    Each pass runs even if an earlier one raised.

    Returns:
        Dict with the summary of each pass (None for a pass that failed) and
        the names of failed passes
    """
    now = clock()

    passes = {
        "reminders_24h": lambda: send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        ),
        "reminders_2h": lambda: send_visit_reminders(
            REMINDER_2H, now=now, session_factory=session_factory, notifier=notifier
        ),
        "no_show_sweep": lambda: sweep_no_shows(now=now, session_factory=session_factory),
    }

    results: dict[str, Any] = {"executed_at": now.isoformat(), "failed_passes": []}

    for name, run_pass in passes.items():
        try:
            results[name] = await run_pass()
        except Exception as e:
            logger.error(f"Admissions automation pass {name} failed: {e}", exc_info=True)
            results[name] = None
            results["failed_passes"].append(name)

    return results


def register_admissions_jobs(every: EveryFunc = every) -> None:
    """
    Register the admissions automation tick with the scheduler.

    Call during application startup. Does nothing when
    settings.automation_enabled is off.

    Args:
        every: Periodic registration function; defaults to the app scheduler
    """
    if not settings.automation_enabled:
        logger.info("Admissions automation disabled, no jobs registered")
        return

    period = timedelta(seconds=settings.automation_tick_seconds)
    every(JOB_ID_AUTOMATION_TICK, period, run_admissions_automation)
    logger.info(f"Registered job: {JOB_ID_AUTOMATION_TICK} (interval: {period})")
