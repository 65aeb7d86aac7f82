"""
Admissions Task Automation

Creates and cancels the follow-up tasks that the admissions engine manages on
staff's behalf. Every function works inside the caller's session and never
commits, so task writes share the caller's transaction.

Automation tags:
- "application-status:<key>" for tasks opened by application status changes
- "taster-no-show" for follow-ups after a missed taster visit
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import repository
from .models import AutomationTask, TaskStatus, VisitSession

logger = logging.getLogger(__name__)

APPLICATION_STATUS_TAG_PREFIX = "application-status:"
NO_SHOW_TAG = "taster-no-show"

NO_SHOW_FOLLOW_UP_DUE = timedelta(days=1)

# Statuses an automation task can still be cancelled from
OPEN_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


def application_status_tag(automation_key: str) -> str:
    return f"{APPLICATION_STATUS_TAG_PREFIX}{automation_key}"


async def create_application_automation_task(
    db: AsyncSession,
    *,
    automation_key: str,
    lead_id: UUID,
    application_id: UUID,
    title: str,
    description: str | None,
    due_in_days: int,
    now: datetime,
    assignee_id: UUID | None = None,
) -> AutomationTask:
    """
    Open a task for an application status.

    The task is tagged "application-status:<automation_key>" and due
    due_in_days after now.
    """
    task = await repository.create_task(
        db,
        lead_id=lead_id,
        application_id=application_id,
        title=title,
        description=description,
        due_at=now + timedelta(days=due_in_days),
        assignee_id=assignee_id,
        status=TaskStatus.PENDING,
        automation_tag=application_status_tag(automation_key),
        extra_data={"automation": "application-status", "key": automation_key},
    )
    logger.debug(f"Created {task.automation_tag} task {task.id} for application {application_id}")
    return task


async def cancel_open_application_automation_tasks(db: AsyncSession, application_id: UUID) -> int:
    """
    Cancel the application's open status-automation tasks.

    Only PENDING and IN_PROGRESS tasks tagged "application-status:*" are
    touched; manual tasks and finished tasks keep their status. Running it
    again cancels nothing.

    Returns:
        Number of tasks cancelled
    """
    result = await db.execute(
        update(AutomationTask)
        .where(
            and_(
                AutomationTask.application_id == application_id,
                AutomationTask.status.in_(OPEN_TASK_STATUSES),
                AutomationTask.automation_tag.like(f"{APPLICATION_STATUS_TAG_PREFIX}%"),
            )
        )
        .values(status=TaskStatus.CANCELLED, completed_at=None)
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount
    if cancelled:
        logger.debug(f"Cancelled {cancelled} automation tasks for application {application_id}")
    return cancelled


async def create_no_show_follow_up(
    db: AsyncSession,
    *,
    lead_id: UUID,
    session: VisitSession,
    now: datetime,
) -> AutomationTask:
    """Open a follow-up task for a lead who missed a taster session."""
    return await repository.create_task(
        db,
        lead_id=lead_id,
        title=f"Follow up: missed taster {session.title}",
        description=(
            f"Automated follow-up generated after taster session on "
            f"{session.start_time.isoformat()}"
        ),
        due_at=now + NO_SHOW_FOLLOW_UP_DUE,
        status=TaskStatus.PENDING,
        automation_tag=NO_SHOW_TAG,
        extra_data={
            "automation": NO_SHOW_TAG,
            "session_id": str(session.id),
            "branch_id": str(session.branch_id) if session.branch_id else None,
        },
    )
