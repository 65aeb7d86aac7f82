"""
Admissions Router

API endpoints for admissions staff.

Endpoints:
- POST /admissions/leads - Create a lead
- GET /admissions/leads/{id} - Get a lead with its stage history
- POST /admissions/leads/{id}/stage - Move a lead to a new stage
- POST /admissions/leads/bulk-stage - Move several leads to a new stage
- POST /admissions/visit-sessions - Schedule a taster visit session
- POST /admissions/visit-sessions/{id}/attendees - Book a lead onto a session
- POST /admissions/visit-sessions/{id}/attendees/{attendee_id}/check-in - Check an attendee in
- POST /admissions/applications - Create an application
- PATCH /admissions/applications/{id} - Update an application
- GET /admissions/applications/{id}/tasks - List an application's tasks
- POST /admissions/tasks - Create a manual task
- PATCH /admissions/tasks/{id}/status - Update a task's status

The acting staff member is passed as actor_id in request bodies.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from campus.core.database import get_db
from campus.modules.admissions import service
from campus.modules.admissions.schemas import (
    ApplicationCreate,
    ApplicationResponse,
    ApplicationUpdate,
    AttendanceCheckIn,
    BulkLeadStaffAssignment,
    BulkLeadStageUpdate,
    LeadCreate,
    LeadDetailResponse,
    LeadResponse,
    LeadStageUpdate,
    TaskCreate,
    TaskResponse,
    TaskStatusUpdate,
    VisitAttendeeCreate,
    VisitAttendeeResponse,
    VisitSessionCreate,
    VisitSessionResponse,
)
from campus.modules.admissions.service import AdmissionsServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Helper Functions
# ============================================


def _handle_service_error(e: AdmissionsServiceError) -> None:
    """Convert service errors to HTTPExceptions."""
    raise HTTPException(
        status_code=e.status_code,
        detail={
            "error": e.error_code,
            "message": e.message,
        },
    )


def _internal_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
        },
    )


def _staff_reassignment(data: LeadStageUpdate | BulkLeadStageUpdate):
    """assigned_staff_id if the client sent it (even as null), else UNSET."""
    if "assigned_staff_id" in data.model_fields_set:
        return data.assigned_staff_id
    return service.UNSET


# ============================================
# Lead Endpoints
# ============================================


@router.post(
    "/leads",
    response_model=LeadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Lead",
    description="Create a lead at the NEW stage. The first stage history entry is written with it.",
    responses={
        201: {"description": "Lead created", "model": LeadResponse},
        422: {"description": "Validation error"},
    },
)
async def create_lead(
    data: LeadCreate,
    db: AsyncSession = Depends(get_db),
) -> LeadResponse:
    try:
        lead = await service.create_lead(db, data, actor_id=data.actor_id)
        return LeadResponse.model_validate(lead)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error creating lead: {e}")
        raise _internal_error() from e


@router.get(
    "/leads/{lead_id}",
    response_model=LeadDetailResponse,
    summary="Get Lead",
    description="Get a lead with its full stage history, oldest entry first.",
    responses={
        200: {"description": "Lead details", "model": LeadDetailResponse},
        404: {"description": "Lead not found"},
    },
)
async def get_lead(
    lead_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> LeadDetailResponse:
    try:
        lead = await service.get_lead(db, lead_id)
        return LeadDetailResponse.model_validate(lead)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error getting lead {lead_id}: {e}")
        raise _internal_error() from e


@router.post(
    "/leads/bulk-stage",
    response_model=list[LeadResponse],
    summary="Bulk Update Lead Stage",
    description="""
Move several leads to the same stage in one all-or-nothing operation.

- Duplicate ids are ignored
- Leads already at the target stage are returned unchanged
- If any lead may not move, nothing is written and the error lists every rejected lead
""",
    responses={
        200: {"description": "Requested leads, in request order"},
        400: {"description": "Empty batch or invalid stage transition"},
        404: {"description": "One or more leads not found"},
    },
)
async def bulk_update_lead_stage(
    data: BulkLeadStageUpdate,
    db: AsyncSession = Depends(get_db),
) -> list[LeadResponse]:
    try:
        leads = await service.bulk_transition_leads(
            db,
            data.lead_ids,
            data.to_stage,
            actor_id=data.actor_id,
            reason=data.reason,
            assigned_staff_id=_staff_reassignment(data),
        )
        return [LeadResponse.model_validate(lead) for lead in leads]
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error in bulk stage update: {e}")
        raise _internal_error() from e


@router.post(
    "/leads/bulk-assign",
    response_model=list[LeadResponse],
    summary="Bulk Assign Lead Staff",
    description="Assign one staff member to several leads. Send a null assigned_staff_id to unassign.",
    responses={
        200: {"description": "Requested leads, in request order"},
        404: {"description": "One or more leads not found"},
    },
)
async def bulk_assign_lead_staff(
    data: BulkLeadStaffAssignment,
    db: AsyncSession = Depends(get_db),
) -> list[LeadResponse]:
    try:
        leads = await service.bulk_assign_lead_staff(db, data.lead_ids, data.assigned_staff_id)
        return [LeadResponse.model_validate(lead) for lead in leads]
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error in bulk staff assignment: {e}")
        raise _internal_error() from e


@router.post(
    "/leads/{lead_id}/stage",
    response_model=LeadResponse,
    summary="Update Lead Stage",
    description="Move a lead to a new stage. Moving to the current stage is a no-op.",
    responses={
        200: {"description": "Updated lead", "model": LeadResponse},
        400: {"description": "Invalid stage transition"},
        404: {"description": "Lead not found"},
    },
)
async def update_lead_stage(
    lead_id: UUID,
    data: LeadStageUpdate,
    db: AsyncSession = Depends(get_db),
) -> LeadResponse:
    try:
        lead = await service.transition_lead(
            db,
            lead_id,
            data.to_stage,
            actor_id=data.actor_id,
            reason=data.reason,
            assigned_staff_id=_staff_reassignment(data),
        )
        return LeadResponse.model_validate(lead)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error updating stage for lead {lead_id}: {e}")
        raise _internal_error() from e


# ============================================
# Visit Session Endpoints
# ============================================


@router.post(
    "/visit-sessions",
    response_model=VisitSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Visit Session",
    responses={
        201: {"description": "Visit session created", "model": VisitSessionResponse},
        400: {"description": "Session ends before it starts"},
    },
)
async def create_visit_session(
    data: VisitSessionCreate,
    db: AsyncSession = Depends(get_db),
) -> VisitSessionResponse:
    try:
        visit_session = await service.create_visit_session(db, data)
        return VisitSessionResponse.model_validate(visit_session)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error creating visit session: {e}")
        raise _internal_error() from e


@router.post(
    "/visit-sessions/{session_id}/attendees",
    response_model=VisitAttendeeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add Visit Attendee",
    responses={
        201: {"description": "Lead booked onto the session", "model": VisitAttendeeResponse},
        404: {"description": "Session or lead not found"},
        409: {"description": "Lead already booked on this session"},
    },
)
async def add_visit_attendee(
    session_id: UUID,
    data: VisitAttendeeCreate,
    db: AsyncSession = Depends(get_db),
) -> VisitAttendeeResponse:
    try:
        attendee = await service.add_visit_attendee(db, session_id, data.lead_id)
        return VisitAttendeeResponse.model_validate(attendee)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error adding attendee to visit session {session_id}: {e}")
        raise _internal_error() from e


@router.post(
    "/visit-sessions/{session_id}/attendees/{attendee_id}/check-in",
    response_model=VisitAttendeeResponse,
    summary="Check In Attendee",
    description="Record that an attendee arrived. The first check-in time is kept.",
    responses={
        200: {"description": "Attendee checked in", "model": VisitAttendeeResponse},
        404: {"description": "Attendee not booked on this session"},
    },
)
async def check_in_attendee(
    session_id: UUID,
    attendee_id: UUID,
    data: AttendanceCheckIn,
    db: AsyncSession = Depends(get_db),
) -> VisitAttendeeResponse:
    try:
        attendee = await service.record_attendance(
            db, session_id, attendee_id, attended_at=data.attended_at
        )
        return VisitAttendeeResponse.model_validate(attendee)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error checking in attendee {attendee_id}: {e}")
        raise _internal_error() from e


# ============================================
# Application Endpoints
# ============================================


@router.post(
    "/applications",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Application",
    description="Create an application for a lead. Follow-up tasks for the initial status are opened with it.",
    responses={
        201: {"description": "Application created", "model": ApplicationResponse},
        404: {"description": "Lead not found"},
    },
)
async def create_application(
    data: ApplicationCreate,
    db: AsyncSession = Depends(get_db),
) -> ApplicationResponse:
    try:
        application = await service.create_application(db, data)
        return ApplicationResponse.model_validate(application)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error creating application: {e}")
        raise _internal_error() from e


@router.patch(
    "/applications/{application_id}",
    response_model=ApplicationResponse,
    summary="Update Application",
    description="""
Partially update an application.

A status change must follow the application status graph. On a status change
the open automation tasks are cancelled and the new status's tasks are opened.
""",
    responses={
        200: {"description": "Updated application", "model": ApplicationResponse},
        400: {"description": "Invalid status transition"},
        404: {"description": "Application not found"},
    },
)
async def update_application(
    application_id: UUID,
    data: ApplicationUpdate,
    db: AsyncSession = Depends(get_db),
) -> ApplicationResponse:
    try:
        application = await service.update_application(db, application_id, data)
        return ApplicationResponse.model_validate(application)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error updating application {application_id}: {e}")
        raise _internal_error() from e


@router.get(
    "/applications/{application_id}/tasks",
    response_model=list[TaskResponse],
    summary="List Application Tasks",
    responses={
        200: {"description": "Tasks linked to the application, oldest first"},
        404: {"description": "Application not found"},
    },
)
async def list_application_tasks(
    application_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> list[TaskResponse]:
    try:
        tasks = await service.list_application_tasks(db, application_id)
        return [TaskResponse.model_validate(task) for task in tasks]
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error listing tasks for application {application_id}: {e}")
        raise _internal_error() from e


# ============================================
# Task Endpoints
# ============================================


@router.post(
    "/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Task",
    responses={
        201: {"description": "Task created", "model": TaskResponse},
        400: {"description": "Task has no lead or application"},
        404: {"description": "Lead or application not found"},
    },
)
async def create_task(
    data: TaskCreate,
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    try:
        task = await service.create_task(db, data, actor_id=data.actor_id)
        return TaskResponse.model_validate(task)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error creating task: {e}")
        raise _internal_error() from e


@router.patch(
    "/tasks/{task_id}/status",
    response_model=TaskResponse,
    summary="Update Task Status",
    responses={
        200: {"description": "Updated task", "model": TaskResponse},
        404: {"description": "Task not found"},
    },
)
async def update_task_status(
    task_id: UUID,
    data: TaskStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    try:
        task = await service.update_task_status(db, task_id, data.status)
        return TaskResponse.model_validate(task)
    except AdmissionsServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Error updating status for task {task_id}: {e}")
        raise _internal_error() from e
