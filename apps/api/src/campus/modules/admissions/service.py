"""
Admissions Service Layer

Business logic for the admissions pipeline.
Orchestrates repository operations and task automation.

This module implements:
1. Lead Stage Engine:
   - Single and bulk stage changes validated by a pluggable policy
   - Append-only stage history, written in the same commit as the change
   - First-entry milestone timestamps per stage

2. Application Task Automation:
   - Status changes follow the application status graph
   - Entering a status opens that status's follow-up tasks
   - Every status change cancels the previous open automation tasks;
     REJECTED, WITHDRAWN and ENROLLED only cancel

3. Visit Sessions and Tasks:
   - Scheduling taster sessions, booking attendees, check-in
   - Manual tasks and task status updates

Every operation commits once at the end, so a failure leaves no partial
writes behind.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from campus.core.clock import utc_now
from campus.modules.admissions import repository, tasks
from campus.modules.admissions.models import (
    Application,
    ApplicationStatus,
    AutomationTask,
    Lead,
    LeadStage,
    LeadStageHistory,
    TaskStatus,
    VisitAttendee,
    VisitSession,
)
from campus.modules.admissions.schemas import (
    ApplicationCreate,
    ApplicationUpdate,
    LeadCreate,
    TaskCreate,
    VisitSessionCreate,
)
from campus.modules.admissions.stages import (
    DEFAULT_STAGE_POLICY,
    StageTransitionPolicy,
    apply_stage_milestone,
    validate_stage_transition,
)

logger = logging.getLogger(__name__)

# Marks an optional argument that was not passed, as opposed to passed as None
UNSET: Any = object()

LEAD_CREATED_REASON = "Lead created"


# ============================================
# Errors
# ============================================


class AdmissionsServiceError(Exception):
    """Base exception for admissions service errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


def _format_ids(ids: Sequence[UUID]) -> str:
    return ", ".join(str(i) for i in ids)


class LeadNotFoundError(AdmissionsServiceError):
    """Raised when one or more leads do not exist."""

    def __init__(self, *lead_ids: UUID):
        self.lead_ids = list(lead_ids)
        if len(lead_ids) == 1:
            message = f"Lead {lead_ids[0]} not found"
        elif lead_ids:
            message = f"Leads not found: {_format_ids(lead_ids)}"
        else:
            message = "Lead not found"
        super().__init__(
            message=message,
            error_code="LEAD_NOT_FOUND",
            status_code=404,
        )


class ApplicationNotFoundError(AdmissionsServiceError):
    """Raised when an application is not found."""

    def __init__(self, application_id: UUID | None = None):
        message = (
            f"Application {application_id} not found" if application_id else "Application not found"
        )
        super().__init__(
            message=message,
            error_code="APPLICATION_NOT_FOUND",
            status_code=404,
        )


class VisitSessionNotFoundError(AdmissionsServiceError):
    """Raised when a visit session is not found."""

    def __init__(self, session_id: UUID):
        super().__init__(
            message=f"Visit session {session_id} not found",
            error_code="VISIT_SESSION_NOT_FOUND",
            status_code=404,
        )


class VisitAttendeeNotFoundError(AdmissionsServiceError):
    """Raised when an attendee is not booked on the given session."""

    def __init__(self, attendee_id: UUID):
        super().__init__(
            message=f"Attendee {attendee_id} not found for this session",
            error_code="VISIT_ATTENDEE_NOT_FOUND",
            status_code=404,
        )


class TaskNotFoundError(AdmissionsServiceError):
    """Raised when a task is not found."""

    def __init__(self, task_id: UUID):
        super().__init__(
            message=f"Task {task_id} not found",
            error_code="TASK_NOT_FOUND",
            status_code=404,
        )


class InvalidStageTransitionError(AdmissionsServiceError):
    """Raised when the stage policy rejects a move for one or more leads."""

    def __init__(self, lead_ids: Sequence[UUID], to_stage: LeadStage):
        self.lead_ids = list(lead_ids)
        self.to_stage = to_stage
        super().__init__(
            message=(
                f"Invalid stage transition to {to_stage.value} for leads: "
                f"{_format_ids(lead_ids)}"
            ),
            error_code="INVALID_STAGE_TRANSITION",
            status_code=400,
        )


class EmptyBatchError(AdmissionsServiceError):
    """Raised when a bulk operation receives no ids."""

    def __init__(self):
        super().__init__(
            message="At least one lead ID is required",
            error_code="EMPTY_BATCH",
            status_code=400,
        )


class InvalidApplicationStatusTransitionError(AdmissionsServiceError):
    """Raised when an application status change is not in the status graph."""

    def __init__(self, current_status: ApplicationStatus, new_status: ApplicationStatus):
        self.current_status = current_status
        self.new_status = new_status
        valid_transitions = repository.VALID_APPLICATION_TRANSITIONS.get(current_status, set())
        super().__init__(
            message=(
                f"Invalid status transition: {current_status.value} -> {new_status.value}. "
                f"Valid transitions: {sorted(s.value for s in valid_transitions)}"
            ),
            error_code="INVALID_STATUS_TRANSITION",
            status_code=400,
        )


class DuplicateAttendeeError(AdmissionsServiceError):
    """Raised when a lead is already booked on a session."""

    def __init__(self, session_id: UUID, lead_id: UUID):
        super().__init__(
            message=f"Lead {lead_id} is already booked on visit session {session_id}",
            error_code="DUPLICATE_ATTENDEE",
            status_code=409,
        )


class InvalidVisitSessionError(AdmissionsServiceError):
    """Raised when a visit session's times are inconsistent."""

    def __init__(self, message: str = "Visit session must end after it starts"):
        super().__init__(
            message=message,
            error_code="INVALID_VISIT_SESSION",
            status_code=400,
        )


class TaskLinkError(AdmissionsServiceError):
    """Raised when a manual task is not linked to a lead or application."""

    def __init__(self):
        super().__init__(
            message="Task must be associated with a lead or application",
            error_code="TASK_LINK_REQUIRED",
            status_code=400,
        )


# ============================================
# Helpers
# ============================================


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ============================================
# Leads
# ============================================


async def create_lead(
    db: AsyncSession,
    data: LeadCreate,
    *,
    actor_id: UUID | None = None,
    now: datetime | None = None,
) -> Lead:
    """
    Create a lead at NEW.

    The lead and its first history row (no from-stage, reason "Lead created")
    are written in one commit.
    """
    now = now or utc_now()

    lead = await repository.create_lead(
        db,
        branch_id=data.branch_id,
        assigned_staff_id=data.assigned_staff_id,
        parent_first_name=data.parent_first_name.strip(),
        parent_last_name=data.parent_last_name.strip(),
        parent_email=data.parent_email.strip().lower(),
        parent_phone=_clean_text(data.parent_phone),
        student_first_name=_clean_text(data.student_first_name),
        student_last_name=_clean_text(data.student_last_name),
        programme_interest=_clean_text(data.programme_interest),
        source=_clean_text(data.source),
        notes=_clean_text(data.notes),
        tags=data.tags,
        extra_data=data.extra_data,
        stage=LeadStage.NEW,
        new_at=now,
    )

    await repository.add_stage_history(
        db,
        lead_id=lead.id,
        from_stage=None,
        to_stage=LeadStage.NEW,
        changed_by_id=actor_id,
        reason=LEAD_CREATED_REASON,
        changed_at=now,
    )

    await db.commit()
    logger.info(f"Created lead {lead.id}")
    return lead


async def get_lead(db: AsyncSession, lead_id: UUID) -> Lead:
    """Get a lead with its stage history loaded."""
    lead = await repository.get_lead_by_id(db, lead_id, with_history=True)
    if not lead:
        raise LeadNotFoundError(lead_id)
    return lead


async def list_lead_stage_history(db: AsyncSession, lead_id: UUID) -> list[LeadStageHistory]:
    """Stage history for a lead, oldest first."""
    lead = await repository.get_lead_by_id(db, lead_id)
    if not lead:
        raise LeadNotFoundError(lead_id)
    return await repository.list_stage_history(db, lead_id)


async def _apply_stage_change(
    db: AsyncSession,
    lead: Lead,
    to_stage: LeadStage,
    *,
    actor_id: UUID | None,
    reason: str | None,
    assigned_staff_id: Any,
    now: datetime,
) -> None:
    from_stage = lead.stage

    lead.stage = to_stage
    apply_stage_milestone(lead, to_stage, now)
    if assigned_staff_id is not UNSET:
        lead.assigned_staff_id = assigned_staff_id

    await repository.add_stage_history(
        db,
        lead_id=lead.id,
        from_stage=from_stage,
        to_stage=to_stage,
        changed_by_id=actor_id,
        reason=reason,
        changed_at=now,
    )


async def transition_lead(
    db: AsyncSession,
    lead_id: UUID,
    to_stage: LeadStage,
    *,
    actor_id: UUID | None = None,
    reason: str | None = None,
    assigned_staff_id: Any = UNSET,
    now: datetime | None = None,
    policy: StageTransitionPolicy = DEFAULT_STAGE_POLICY,
) -> Lead:
    """
    Move a lead to a new stage.

    Moving a lead to the stage it is already at returns it unchanged with no
    history row. Otherwise the stage, milestone, optional staff reassignment
    and one history row are committed together.

    Args:
        db: Database session
        lead_id: UUID of the lead
        to_stage: Target stage
        actor_id: Who made the change, recorded in history
        reason: Free-text reason, stripped; blank becomes None
        assigned_staff_id: New assignee; leave unset to keep the current one
        now: Time of the change (defaults to the current UTC time)
        policy: Stage transition predicate

    Returns:
        The lead

    Raises:
        LeadNotFoundError: If the lead doesn't exist
        InvalidStageTransitionError: If the policy rejects the move
    """
    now = now or utc_now()

    lead = await repository.get_lead_by_id(db, lead_id)
    if not lead:
        logger.warning(f"Lead not found: {lead_id}")
        raise LeadNotFoundError(lead_id)

    if lead.stage == to_stage:
        return lead

    if not validate_stage_transition(lead.stage, to_stage, policy):
        logger.warning(f"Rejected stage change for lead {lead_id}: {lead.stage.value} -> {to_stage.value}")
        raise InvalidStageTransitionError([lead_id], to_stage)

    from_stage = lead.stage
    await _apply_stage_change(
        db,
        lead,
        to_stage,
        actor_id=actor_id,
        reason=_clean_text(reason),
        assigned_staff_id=assigned_staff_id,
        now=now,
    )
    await db.commit()

    logger.info(f"Lead {lead_id} moved {from_stage.value} -> {to_stage.value}")
    return lead


async def bulk_transition_leads(
    db: AsyncSession,
    lead_ids: Sequence[UUID],
    to_stage: LeadStage,
    *,
    actor_id: UUID | None = None,
    reason: str | None = None,
    assigned_staff_id: Any = UNSET,
    now: datetime | None = None,
    policy: StageTransitionPolicy = DEFAULT_STAGE_POLICY,
) -> list[Lead]:
    """
    Move several leads to the same stage, all or nothing.

    Duplicate ids are ignored. Leads already at to_stage are left untouched.
    Every other lead is validated before anything is written; if any is
    rejected, nothing is written and the error names every rejected lead.

    Returns:
        The requested leads (changed or not), in request order

    Raises:
        EmptyBatchError: If no ids are given
        LeadNotFoundError: If any lead doesn't exist
        InvalidStageTransitionError: If the policy rejects any lead
    """
    now = now or utc_now()

    unique_ids = list(dict.fromkeys(lead_ids))
    if not unique_ids:
        raise EmptyBatchError()

    leads_by_id = {lead.id: lead for lead in await repository.get_leads_by_ids(db, unique_ids)}

    missing = [lead_id for lead_id in unique_ids if lead_id not in leads_by_id]
    if missing:
        raise LeadNotFoundError(*missing)

    to_change = [leads_by_id[lead_id] for lead_id in unique_ids if leads_by_id[lead_id].stage != to_stage]

    invalid = [
        lead.id for lead in to_change if not validate_stage_transition(lead.stage, to_stage, policy)
    ]
    if invalid:
        logger.warning(f"Rejected bulk stage change to {to_stage.value} for {len(invalid)} leads")
        raise InvalidStageTransitionError(invalid, to_stage)

    cleaned_reason = _clean_text(reason)
    for lead in to_change:
        await _apply_stage_change(
            db,
            lead,
            to_stage,
            actor_id=actor_id,
            reason=cleaned_reason,
            assigned_staff_id=assigned_staff_id,
            now=now,
        )

    if to_change:
        await db.commit()
        logger.info(f"Moved {len(to_change)} leads to {to_stage.value}")

    return [leads_by_id[lead_id] for lead_id in unique_ids]


async def bulk_assign_lead_staff(
    db: AsyncSession,
    lead_ids: Sequence[UUID],
    assigned_staff_id: UUID | None,
) -> list[Lead]:
    """
    Assign (or, with None, unassign) one staff member on several leads.

    Duplicate ids are ignored. Every id is checked before anything is
    written, and stage history is not touched.

    Returns:
        The requested leads, in request order

    Raises:
        EmptyBatchError: If no ids are given
        LeadNotFoundError: If any lead doesn't exist
    """
    unique_ids = list(dict.fromkeys(lead_ids))
    if not unique_ids:
        raise EmptyBatchError()

    leads_by_id = {lead.id: lead for lead in await repository.get_leads_by_ids(db, unique_ids)}

    missing = [lead_id for lead_id in unique_ids if lead_id not in leads_by_id]
    if missing:
        raise LeadNotFoundError(*missing)

    to_change = [
        leads_by_id[lead_id]
        for lead_id in unique_ids
        if leads_by_id[lead_id].assigned_staff_id != assigned_staff_id
    ]
    for lead in to_change:
        lead.assigned_staff_id = assigned_staff_id

    if to_change:
        await db.commit()
        logger.info(f"Assigned staff {assigned_staff_id} to {len(to_change)} leads")

    return [leads_by_id[lead_id] for lead_id in unique_ids]


# ============================================
# Applications
# ============================================


@dataclass(frozen=True)
class TaskTemplate:
    """A follow-up task opened when an application enters a status."""

    key: str
    title: str
    description: str
    due_in_days: int


APPLICATION_TASK_TEMPLATES: dict[ApplicationStatus, list[TaskTemplate]] = {
    ApplicationStatus.SUBMITTED: [
        TaskTemplate(
            key="review",
            title="Review application submission",
            description="Review the new application submission and progress the status when complete.",
            due_in_days=2,
        ),
    ],
    ApplicationStatus.UNDER_REVIEW: [
        TaskTemplate(
            key="request_documents",
            title="Request supporting documents",
            description="Reach out to the family for outstanding supporting documents.",
            due_in_days=3,
        ),
    ],
    ApplicationStatus.OFFER_SENT: [
        TaskTemplate(
            key="offer_follow_up",
            title="Follow up on offer decision",
            description="Follow up with the family regarding the sent offer.",
            due_in_days=5,
        ),
    ],
    ApplicationStatus.ACCEPTED: [
        TaskTemplate(
            key="collect_enrollment_paperwork",
            title="Collect enrollment paperwork",
            description="Collect the required enrollment paperwork from the family.",
            due_in_days=7,
        ),
        TaskTemplate(
            key="schedule_onboarding_call",
            title="Schedule onboarding call",
            description="Schedule an onboarding call to welcome the family and outline next steps.",
            due_in_days=3,
        ),
    ],
}

# Entering these statuses cancels open automation tasks and opens none
STATUSES_CANCELLING_TASKS = {
    ApplicationStatus.REJECTED,
    ApplicationStatus.WITHDRAWN,
    ApplicationStatus.ENROLLED,
}

# Entering these statuses records a decision time
DECISION_STATUSES = {
    ApplicationStatus.REJECTED,
    ApplicationStatus.WITHDRAWN,
}

# Status -> Application column stamped when the status is entered
STATUS_TIMESTAMP_FIELDS: dict[ApplicationStatus, str] = {
    ApplicationStatus.SUBMITTED: "submitted_at",
    ApplicationStatus.UNDER_REVIEW: "review_started_at",
    ApplicationStatus.OFFER_SENT: "offer_sent_at",
    ApplicationStatus.ACCEPTED: "offer_accepted_at",
    ApplicationStatus.ENROLLED: "enrolled_at",
}

_STRIPPED_APPLICATION_FIELDS = ("year_group", "decision_notes")


def _application_fields(data: ApplicationUpdate) -> dict[str, Any]:
    """Fields present in the request, with text stripped and times in UTC."""
    fields = data.model_dump(exclude_unset=True)
    for name in _STRIPPED_APPLICATION_FIELDS:
        if name in fields:
            fields[name] = _clean_text(fields[name])
    for name, value in fields.items():
        if isinstance(value, datetime):
            fields[name] = _as_utc(value)
    return fields


def _stamp_status(
    application: Application,
    status: ApplicationStatus,
    explicit_fields: dict[str, Any],
    now: datetime,
) -> None:
    """Stamp the status milestone and decision time, unless already set or supplied."""
    field = STATUS_TIMESTAMP_FIELDS.get(status)
    if field and field not in explicit_fields and getattr(application, field) is None:
        setattr(application, field, now)

    if status in DECISION_STATUSES and application.decision_at is None:
        application.decision_at = now


async def _open_status_tasks(
    db: AsyncSession,
    application: Application,
    lead: Lead,
    status: ApplicationStatus,
    now: datetime,
) -> list[AutomationTask]:
    assignee_id = application.reviewed_by_id or lead.assigned_staff_id
    created = []
    for template in APPLICATION_TASK_TEMPLATES.get(status, []):
        created.append(
            await tasks.create_application_automation_task(
                db,
                automation_key=template.key,
                lead_id=application.lead_id,
                application_id=application.id,
                title=template.title,
                description=template.description,
                due_in_days=template.due_in_days,
                now=now,
                assignee_id=assignee_id,
            )
        )
    return created


async def create_application(
    db: AsyncSession,
    data: ApplicationCreate,
    *,
    now: datetime | None = None,
) -> Application:
    """
    Create an application for an existing lead.

    The status defaults to DRAFT. Entering the initial status stamps its
    milestone and opens its follow-up tasks (or, for a cancelling status,
    cancels instead) in the same commit as the insert.

    Raises:
        LeadNotFoundError: If the lead doesn't exist
    """
    now = now or utc_now()

    lead = await repository.get_lead_by_id(db, data.lead_id)
    if not lead:
        raise LeadNotFoundError(data.lead_id)

    fields = _application_fields(data)
    fields.pop("lead_id", None)
    status = fields.pop("status", None) or ApplicationStatus.DRAFT

    application = await repository.create_application(db, lead_id=lead.id, status=status, **fields)
    _stamp_status(application, status, fields, now)

    if status in STATUSES_CANCELLING_TASKS:
        await tasks.cancel_open_application_automation_tasks(db, application.id)
    else:
        await _open_status_tasks(db, application, lead, status, now)

    await db.commit()
    logger.info(f"Created application {application.id} for lead {lead.id} at {status.value}")
    return application


async def update_application(
    db: AsyncSession,
    application_id: UUID,
    data: ApplicationUpdate,
    *,
    now: datetime | None = None,
) -> Application:
    """
    Apply a partial update to an application.

    A status change must follow VALID_APPLICATION_TRANSITIONS. When the
    status changes, open automation tasks are cancelled and the new status's
    tasks are opened, in the same commit as the update. Edits that leave the
    status alone touch no tasks.

    Raises:
        ApplicationNotFoundError: If the application doesn't exist
        InvalidApplicationStatusTransitionError: If the status change is not allowed
    """
    now = now or utc_now()

    application = await repository.get_application_by_id(db, application_id)
    if not application:
        logger.warning(f"Application not found: {application_id}")
        raise ApplicationNotFoundError(application_id)

    fields = _application_fields(data)
    new_status = fields.pop("status", None)
    status_changed = new_status is not None and new_status != application.status

    if status_changed and not repository.is_valid_application_transition(
        application.status, new_status
    ):
        logger.warning(
            f"Rejected status change for application {application_id}: "
            f"{application.status.value} -> {new_status.value}"
        )
        raise InvalidApplicationStatusTransitionError(application.status, new_status)

    for name, value in fields.items():
        setattr(application, name, value)

    if status_changed:
        previous_status = application.status
        application.status = new_status
        _stamp_status(application, new_status, fields, now)

        await tasks.cancel_open_application_automation_tasks(db, application.id)
        if new_status not in STATUSES_CANCELLING_TASKS:
            lead = await repository.get_lead_by_id(db, application.lead_id)
            await _open_status_tasks(db, application, lead, new_status, now)

        logger.info(
            f"Application {application_id} moved {previous_status.value} -> {new_status.value}"
        )

    await db.commit()
    return application


async def list_application_tasks(db: AsyncSession, application_id: UUID) -> list[AutomationTask]:
    application = await repository.get_application_by_id(db, application_id)
    if not application:
        raise ApplicationNotFoundError(application_id)
    return await repository.list_tasks_for_application(db, application_id)


# ============================================
# Visit Sessions
# ============================================


async def create_visit_session(db: AsyncSession, data: VisitSessionCreate) -> VisitSession:
    """
    Schedule a taster visit session.

    Raises:
        InvalidVisitSessionError: If the session doesn't end after it starts
    """
    start_time = _as_utc(data.start_time)
    end_time = _as_utc(data.end_time)
    if end_time <= start_time:
        raise InvalidVisitSessionError()

    visit_session = await repository.create_visit_session(
        db,
        branch_id=data.branch_id,
        title=data.title.strip(),
        description=_clean_text(data.description),
        start_time=start_time,
        end_time=end_time,
        capacity=data.capacity,
    )
    await db.commit()
    logger.info(f"Created visit session {visit_session.id} starting {start_time.isoformat()}")
    return visit_session


async def add_visit_attendee(db: AsyncSession, session_id: UUID, lead_id: UUID) -> VisitAttendee:
    """
    Book a lead onto a visit session.

    Raises:
        VisitSessionNotFoundError: If the session doesn't exist
        LeadNotFoundError: If the lead doesn't exist
        DuplicateAttendeeError: If the lead is already booked on the session
    """
    visit_session = await repository.get_visit_session_by_id(db, session_id)
    if not visit_session:
        raise VisitSessionNotFoundError(session_id)

    lead = await repository.get_lead_by_id(db, lead_id)
    if not lead:
        raise LeadNotFoundError(lead_id)

    if await repository.get_attendee_by_lead(db, session_id, lead_id):
        raise DuplicateAttendeeError(session_id, lead_id)

    attendee = await repository.create_attendee(db, session_id, lead_id)
    await db.commit()
    return attendee


async def record_attendance(
    db: AsyncSession,
    session_id: UUID,
    attendee_id: UUID,
    *,
    attended_at: datetime | None = None,
    now: datetime | None = None,
) -> VisitAttendee:
    """
    Check an attendee in.

    The first check-in wins; later calls return the attendee unchanged.

    Raises:
        VisitAttendeeNotFoundError: If the attendee isn't booked on the session
    """
    attendee = await repository.get_attendee(db, session_id, attendee_id)
    if not attendee:
        raise VisitAttendeeNotFoundError(attendee_id)

    if attendee.attended_at is not None:
        return attendee

    attendee.attended_at = _as_utc(attended_at) if attended_at else (now or utc_now())
    await db.commit()
    logger.info(f"Checked in attendee {attendee_id} on visit session {session_id}")
    return attendee


# ============================================
# Tasks
# ============================================


async def create_task(
    db: AsyncSession,
    data: TaskCreate,
    *,
    actor_id: UUID | None = None,
    now: datetime | None = None,
) -> AutomationTask:
    """
    Create a manual follow-up task.

    The task needs a lead or an application; when only the application is
    given, the lead is taken from it.

    Raises:
        TaskLinkError: If neither lead_id nor application_id is given
        ApplicationNotFoundError: If the application doesn't exist
        LeadNotFoundError: If the lead doesn't exist
    """
    if not data.lead_id and not data.application_id:
        raise TaskLinkError()

    lead_id = data.lead_id
    if data.application_id:
        application = await repository.get_application_by_id(db, data.application_id)
        if not application:
            raise ApplicationNotFoundError(data.application_id)
        lead_id = lead_id or application.lead_id

    if not await repository.get_lead_by_id(db, lead_id):
        raise LeadNotFoundError(lead_id)

    completed_at = (now or utc_now()) if data.status == TaskStatus.COMPLETED else None

    task = await repository.create_task(
        db,
        lead_id=lead_id,
        application_id=data.application_id,
        title=data.title.strip(),
        description=_clean_text(data.description),
        due_at=_as_utc(data.due_at) if data.due_at else None,
        assignee_id=data.assignee_id,
        created_by_id=actor_id,
        status=data.status,
        completed_at=completed_at,
        extra_data=data.extra_data,
    )
    await db.commit()
    logger.info(f"Created task {task.id} for lead {lead_id}")
    return task


async def update_task_status(
    db: AsyncSession,
    task_id: UUID,
    status: TaskStatus,
    *,
    now: datetime | None = None,
) -> AutomationTask:
    """
    Set a task's status.

    COMPLETED stamps completed_at; any other status clears it.

    Raises:
        TaskNotFoundError: If the task doesn't exist
    """
    task = await repository.get_task_by_id(db, task_id)
    if not task:
        raise TaskNotFoundError(task_id)

    task.status = status
    task.completed_at = (now or utc_now()) if status == TaskStatus.COMPLETED else None

    await db.commit()
    return task
