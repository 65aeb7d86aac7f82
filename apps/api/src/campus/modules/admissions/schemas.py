"""
Admissions Schemas

Pydantic models for admissions request validation and response serialization.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from campus.modules.admissions.models import (
    ApplicationDecision,
    ApplicationStatus,
    LeadStage,
    TaskStatus,
)

# ============================================
# Leads
# ============================================


class LeadCreate(BaseModel):
    """Request body for creating a lead."""

    branch_id: UUID | None = None
    assigned_staff_id: UUID | None = None
    parent_first_name: str = Field(..., min_length=1, max_length=100)
    parent_last_name: str = Field(..., min_length=1, max_length=100)
    parent_email: EmailStr
    parent_phone: str | None = Field(None, max_length=30)
    student_first_name: str | None = Field(None, max_length=100)
    student_last_name: str | None = Field(None, max_length=100)
    programme_interest: str | None = Field(None, max_length=200)
    source: str | None = Field(None, max_length=100)
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    extra_data: dict | None = None
    actor_id: UUID | None = None

    @field_validator("parent_email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()


class LeadStageUpdate(BaseModel):
    """Request body for moving a single lead to a new stage."""

    to_stage: LeadStage
    reason: str | None = Field(None, max_length=1000)
    assigned_staff_id: UUID | None = None
    actor_id: UUID | None = None


class BulkLeadStageUpdate(BaseModel):
    """Request body for moving several leads to the same stage."""

    lead_ids: list[UUID] = Field(..., min_length=1)
    to_stage: LeadStage
    reason: str | None = Field(None, max_length=1000)
    assigned_staff_id: UUID | None = None
    actor_id: UUID | None = None


class BulkLeadStaffAssignment(BaseModel):
    """Request body for assigning one staff member to several leads."""

    lead_ids: list[UUID] = Field(..., min_length=1)
    assigned_staff_id: UUID | None = None


class LeadStageHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    from_stage: LeadStage | None
    to_stage: LeadStage
    changed_by_id: UUID | None
    reason: str | None
    changed_at: datetime


class LeadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    branch_id: UUID | None
    assigned_staff_id: UUID | None
    parent_first_name: str
    parent_last_name: str
    parent_email: str
    parent_phone: str | None
    student_first_name: str | None
    student_last_name: str | None
    programme_interest: str | None
    source: str | None
    tags: list[str]
    stage: LeadStage
    new_at: datetime | None
    contacted_at: datetime | None
    taster_booked_at: datetime | None
    taster_attended_at: datetime | None
    applied_at: datetime | None
    enrolled_at: datetime | None
    created_at: datetime
    updated_at: datetime


class LeadDetailResponse(LeadResponse):
    """Lead with its full stage history, oldest first."""

    notes: str | None
    extra_data: dict | None
    stage_history: list[LeadStageHistoryResponse]


# ============================================
# Visit sessions
# ============================================


class VisitSessionCreate(BaseModel):
    """Request body for scheduling a taster visit session."""

    branch_id: UUID | None = None
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime
    end_time: datetime
    capacity: int | None = Field(None, ge=1)


class VisitSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    branch_id: UUID | None
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime
    capacity: int | None
    reminder_24h_stamped_at: datetime | None
    reminder_2h_stamped_at: datetime | None
    no_show_sweep_completed_at: datetime | None
    created_at: datetime


class VisitAttendeeCreate(BaseModel):
    lead_id: UUID


class AttendanceCheckIn(BaseModel):
    """Check-in body. attended_at defaults to the time of the request."""

    attended_at: datetime | None = None


class VisitAttendeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: UUID
    lead_id: UUID
    attended_at: datetime | None
    reminder_24h_notified_at: datetime | None
    reminder_2h_notified_at: datetime | None
    no_show_at: datetime | None


# ============================================
# Applications
# ============================================


class ApplicationUpdate(BaseModel):
    """
    Partial update for an application.

    Only fields present in the request body are applied.
    """

    branch_id: UUID | None = None
    year_group: str | None = Field(None, max_length=50)
    status: ApplicationStatus | None = None
    submitted_at: datetime | None = None
    review_started_at: datetime | None = None
    offer_sent_at: datetime | None = None
    offer_accepted_at: datetime | None = None
    enrolled_at: datetime | None = None
    reviewed_by_id: UUID | None = None
    decision: ApplicationDecision | None = None
    decision_notes: str | None = None
    decision_at: datetime | None = None


class ApplicationCreate(ApplicationUpdate):
    """Request body for creating an application for an existing lead."""

    lead_id: UUID


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    branch_id: UUID | None
    year_group: str | None
    status: ApplicationStatus
    submitted_at: datetime | None
    review_started_at: datetime | None
    offer_sent_at: datetime | None
    offer_accepted_at: datetime | None
    enrolled_at: datetime | None
    decision: ApplicationDecision | None
    decision_notes: str | None
    decision_at: datetime | None
    reviewed_by_id: UUID | None
    created_at: datetime
    updated_at: datetime


# ============================================
# Tasks
# ============================================


class TaskCreate(BaseModel):
    """Request body for a manual follow-up task."""

    lead_id: UUID | None = None
    application_id: UUID | None = None
    title: str = Field(..., min_length=1, max_length=300)
    description: str | None = None
    due_at: datetime | None = None
    assignee_id: UUID | None = None
    status: TaskStatus = TaskStatus.PENDING
    extra_data: dict | None = None
    actor_id: UUID | None = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    application_id: UUID | None
    title: str
    description: str | None
    due_at: datetime | None
    assignee_id: UUID | None
    created_by_id: UUID | None
    status: TaskStatus
    completed_at: datetime | None
    automation_tag: str | None
    extra_data: dict | None
    created_at: datetime
