"""
Admissions Repository

Database operations for leads, visit sessions, applications and tasks.

Design Principles:
- Only database operations, no business logic
- Functions flush but never commit: the caller owns the transaction, so a
  service operation and all of its side effects land in one commit
- Background job claims are conditional UPDATEs (``WHERE flag IS NULL``);
  the affected row count tells the caller whether it won the claim
- Timezone-aware datetime handling (UTC)
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute, selectinload

from .models import (
    Application,
    ApplicationStatus,
    AutomationTask,
    Lead,
    LeadStage,
    LeadStageHistory,
    VisitAttendee,
    VisitSession,
)

# ============================================
# Lead Repository
# ============================================


async def get_lead_by_id(
    db: AsyncSession,
    lead_id: UUID,
    *,
    with_history: bool = False,
) -> Lead | None:
    """Get a lead, optionally with its stage history loaded."""
    query = select(Lead).where(Lead.id == lead_id)
    if with_history:
        query = query.options(selectinload(Lead.stage_history))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_leads_by_ids(db: AsyncSession, lead_ids: Sequence[UUID]) -> list[Lead]:
    """Get every lead whose id is in lead_ids. Missing ids are simply absent."""
    if not lead_ids:
        return []
    result = await db.execute(select(Lead).where(Lead.id.in_(lead_ids)))
    return list(result.scalars().all())


async def create_lead(db: AsyncSession, **fields: Any) -> Lead:
    """Insert a lead."""
    lead = Lead(**fields)
    db.add(lead)
    await db.flush()
    return lead


async def add_stage_history(
    db: AsyncSession,
    *,
    lead_id: UUID,
    from_stage: LeadStage | None,
    to_stage: LeadStage,
    changed_by_id: UUID | None,
    reason: str | None,
    changed_at: datetime,
) -> LeadStageHistory:
    """Append one stage history row. History rows are never updated."""
    entry = LeadStageHistory(
        lead_id=lead_id,
        from_stage=from_stage,
        to_stage=to_stage,
        changed_by_id=changed_by_id,
        reason=reason,
        changed_at=changed_at,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_stage_history(db: AsyncSession, lead_id: UUID) -> list[LeadStageHistory]:
    """Stage history for a lead, oldest first."""
    result = await db.execute(
        select(LeadStageHistory)
        .where(LeadStageHistory.lead_id == lead_id)
        .order_by(LeadStageHistory.changed_at, LeadStageHistory.id)
    )
    return list(result.scalars().all())


# ============================================
# Visit Session Repository
# ============================================


async def get_visit_session_by_id(db: AsyncSession, session_id: UUID) -> VisitSession | None:
    return await db.get(VisitSession, session_id)


async def create_visit_session(db: AsyncSession, **fields: Any) -> VisitSession:
    visit_session = VisitSession(**fields)
    db.add(visit_session)
    await db.flush()
    return visit_session


async def get_attendee(
    db: AsyncSession,
    session_id: UUID,
    attendee_id: UUID,
) -> VisitAttendee | None:
    """Get an attendee, scoped to its session."""
    result = await db.execute(
        select(VisitAttendee).where(
            and_(
                VisitAttendee.id == attendee_id,
                VisitAttendee.session_id == session_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def get_attendee_by_lead(
    db: AsyncSession,
    session_id: UUID,
    lead_id: UUID,
) -> VisitAttendee | None:
    result = await db.execute(
        select(VisitAttendee).where(
            and_(
                VisitAttendee.session_id == session_id,
                VisitAttendee.lead_id == lead_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def create_attendee(db: AsyncSession, session_id: UUID, lead_id: UUID) -> VisitAttendee:
    attendee = VisitAttendee(session_id=session_id, lead_id=lead_id)
    db.add(attendee)
    await db.flush()
    return attendee


# ============================================
# Application Repository
# ============================================


# Valid application status transitions. Statuses mapped to an empty set are
# terminal.
VALID_APPLICATION_TRANSITIONS: dict[ApplicationStatus, set[ApplicationStatus]] = {
    ApplicationStatus.DRAFT: {
        ApplicationStatus.SUBMITTED,
        ApplicationStatus.WITHDRAWN,
    },
    ApplicationStatus.SUBMITTED: {
        ApplicationStatus.UNDER_REVIEW,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    },
    ApplicationStatus.UNDER_REVIEW: {
        ApplicationStatus.OFFER_SENT,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    },
    ApplicationStatus.OFFER_SENT: {
        ApplicationStatus.ACCEPTED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    },
    ApplicationStatus.ACCEPTED: {
        ApplicationStatus.ENROLLED,
        ApplicationStatus.WITHDRAWN,
    },
    # Terminal states - no transitions allowed
    ApplicationStatus.ENROLLED: set(),
    ApplicationStatus.REJECTED: set(),
    ApplicationStatus.WITHDRAWN: set(),
}


def is_valid_application_transition(
    current_status: ApplicationStatus,
    new_status: ApplicationStatus,
) -> bool:
    return new_status in VALID_APPLICATION_TRANSITIONS.get(current_status, set())


async def get_application_by_id(db: AsyncSession, application_id: UUID) -> Application | None:
    return await db.get(Application, application_id)


async def create_application(db: AsyncSession, **fields: Any) -> Application:
    application = Application(**fields)
    db.add(application)
    await db.flush()
    return application


# ============================================
# Task Repository
# ============================================


async def get_task_by_id(db: AsyncSession, task_id: UUID) -> AutomationTask | None:
    return await db.get(AutomationTask, task_id)


async def create_task(db: AsyncSession, **fields: Any) -> AutomationTask:
    task = AutomationTask(**fields)
    db.add(task)
    await db.flush()
    return task


async def list_tasks_for_application(
    db: AsyncSession,
    application_id: UUID,
) -> list[AutomationTask]:
    result = await db.execute(
        select(AutomationTask)
        .where(AutomationTask.application_id == application_id)
        .order_by(AutomationTask.created_at, AutomationTask.id)
    )
    return list(result.scalars().all())


# ============================================
# Background Job Repository Methods
# ============================================


async def get_sessions_in_reminder_window(
    db: AsyncSession,
    stamp_field: InstrumentedAttribute,
    window_start: datetime,
    window_end: datetime,
) -> list[VisitSession]:
    """
    Get visit sessions that need a reminder pass.

    Finds sessions that:
    1. Start inside [window_start, window_end]
    2. Have NOT been claimed for this reminder (stamp_field is NULL)

    Attendees and their leads are loaded with the sessions.

    Args:
        db: Database session
        stamp_field: The VisitSession claim column for this reminder offset
        window_start: Earliest start time (inclusive)
        window_end: Latest start time (inclusive)

    Returns:
        List of unclaimed sessions in the window
    """
    result = await db.execute(
        select(VisitSession)
        .where(
            and_(
                VisitSession.start_time >= window_start,
                VisitSession.start_time <= window_end,
                stamp_field.is_(None),
            )
        )
        .options(selectinload(VisitSession.attendees).selectinload(VisitAttendee.lead))
        .order_by(VisitSession.start_time)
    )
    return list(result.scalars().all())


async def claim_session(
    db: AsyncSession,
    session_id: UUID,
    stamp_field: InstrumentedAttribute,
    claimed_at: datetime,
) -> bool:
    """
    Claim a session for one background pass.

    Sets stamp_field only if it is still NULL. Exactly one of several
    concurrent callers gets True; everyone else gets False and must skip the
    session.

    Args:
        db: Database session
        session_id: UUID of the visit session
        stamp_field: The VisitSession claim column to set
        claimed_at: Value to write into the claim column

    Returns:
        True if this call set the flag
    """
    result = await db.execute(
        update(VisitSession)
        .where(
            and_(
                VisitSession.id == session_id,
                stamp_field.is_(None),
            )
        )
        .values({stamp_field: claimed_at})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_attendees_notified(
    db: AsyncSession,
    attendee_ids: Sequence[UUID],
    notified_field: InstrumentedAttribute,
    notified_at: datetime,
) -> list[UUID]:
    """
    Stamp the reminder column on attendees that still need it.

    Attendees that have checked in or were already stamped are left alone.

    Returns:
        IDs of the attendees stamped by this call
    """
    if not attendee_ids:
        return []

    result = await db.execute(
        update(VisitAttendee)
        .where(
            and_(
                VisitAttendee.id.in_(attendee_ids),
                VisitAttendee.attended_at.is_(None),
                notified_field.is_(None),
            )
        )
        .values({notified_field: notified_at})
        .returning(VisitAttendee.id)
        .execution_options(synchronize_session=False)
    )
    return list(result.scalars().all())


async def get_sessions_due_for_no_show_sweep(
    db: AsyncSession,
    ended_before: datetime,
) -> list[VisitSession]:
    """
    Get visit sessions whose no-show sweep is due.

    Finds sessions that ended at or before ended_before and have not been
    swept yet (no_show_sweep_completed_at is NULL).
    """
    result = await db.execute(
        select(VisitSession)
        .where(
            and_(
                VisitSession.end_time <= ended_before,
                VisitSession.no_show_sweep_completed_at.is_(None),
            )
        )
        .order_by(VisitSession.end_time)
    )
    return list(result.scalars().all())


async def get_unattended_attendees(db: AsyncSession, session_id: UUID) -> list[VisitAttendee]:
    """Attendees of a session who neither checked in nor were marked no-show."""
    result = await db.execute(
        select(VisitAttendee).where(
            and_(
                VisitAttendee.session_id == session_id,
                VisitAttendee.attended_at.is_(None),
                VisitAttendee.no_show_at.is_(None),
            )
        )
    )
    return list(result.scalars().all())


async def mark_attendee_no_show(
    db: AsyncSession,
    attendee_id: UUID,
    marked_at: datetime,
) -> bool:
    """
    Mark an attendee as a no-show unless they checked in or were already marked.

    Returns:
        True if the attendee was marked by this call
    """
    result = await db.execute(
        update(VisitAttendee)
        .where(
            and_(
                VisitAttendee.id == attendee_id,
                VisitAttendee.attended_at.is_(None),
                VisitAttendee.no_show_at.is_(None),
            )
        )
        .values(no_show_at=marked_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
