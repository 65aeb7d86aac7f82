"""
Admissions Models

Database models for the admissions pipeline: leads and their stage history,
taster visit sessions and attendees, applications, and follow-up tasks.

All timestamps are stored as timezone-aware UTC.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from campus.core.clock import utc_now
from campus.core.database import Base, UTCDateTime


class LeadStage(str, enum.Enum):
    """Pipeline stage of a prospective family, in pipeline order."""

    NEW = "new"
    CONTACTED = "contacted"
    TASTER_BOOKED = "taster_booked"
    ATTENDED = "attended"
    OFFER = "offer"
    ACCEPTED = "accepted"
    ENROLLED = "enrolled"
    ONBOARDED = "onboarded"


class ApplicationStatus(str, enum.Enum):
    """Status of a formal admissions application."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    OFFER_SENT = "offer_sent"
    ACCEPTED = "accepted"
    ENROLLED = "enrolled"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ApplicationDecision(str, enum.Enum):
    """Outcome recorded by the reviewer."""

    OFFERED = "offered"
    WAITLISTED = "waitlisted"
    DECLINED = "declined"


class TaskStatus(str, enum.Enum):
    """Status of a follow-up task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _created_at() -> Mapped[datetime]:
    return mapped_column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        nullable=False,
    )


class Lead(Base):
    """
    A prospective family moving through the admissions pipeline.

    The stage milestone columns (new_at ... enrolled_at) record the first time
    the lead entered the matching stage and are never moved afterwards.
    """

    __tablename__ = "admission_leads"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Ownership
    # Note: branches and staff live in other services, so no FK constraints
    branch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    assigned_staff_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Parent contact
    parent_first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_email: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Student
    student_first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    student_last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    programme_interest: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Context
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    # Pipeline
    stage: Mapped[LeadStage] = mapped_column(
        Enum(LeadStage, name="lead_stage"), nullable=False, default=LeadStage.NEW
    )
    new_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    contacted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    taster_booked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    taster_attended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    enrolled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    # Relationships
    stage_history: Mapped[list["LeadStageHistory"]] = relationship(
        "LeadStageHistory",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="LeadStageHistory.changed_at",
    )
    visit_attendances: Mapped[list["VisitAttendee"]] = relationship(
        "VisitAttendee", back_populates="lead", cascade="all, delete-orphan"
    )
    applications: Mapped[list["Application"]] = relationship(
        "Application", back_populates="lead", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_admission_leads_stage", "stage"),
        Index("ix_admission_leads_parent_email", "parent_email"),
        Index("ix_admission_leads_branch_id", "branch_id"),
    )


class LeadStageHistory(Base):
    """
    One recorded stage change. Append-only.

    from_stage is null for the row written when the lead is created.
    """

    __tablename__ = "admission_lead_stage_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("admission_leads.id", ondelete="CASCADE"), nullable=False
    )
    from_stage: Mapped[LeadStage | None] = mapped_column(
        Enum(LeadStage, name="lead_stage"), nullable=True
    )
    to_stage: Mapped[LeadStage] = mapped_column(Enum(LeadStage, name="lead_stage"), nullable=False)
    changed_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    lead: Mapped["Lead"] = relationship("Lead", back_populates="stage_history")

    __table_args__ = (Index("ix_admission_lead_stage_history_lead_id", "lead_id", "changed_at"),)


class VisitSession(Base):
    """
    A scheduled taster visit that leads attend.

    The *_stamped_at / no_show_sweep_completed_at columns are claim flags for
    the background jobs: once set, the matching job never processes the
    session again.
    """

    __tablename__ = "admission_visit_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Automation claim flags
    reminder_24h_stamped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reminder_2h_stamped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    no_show_sweep_completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    attendees: Mapped[list["VisitAttendee"]] = relationship(
        "VisitAttendee", back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_admission_visit_sessions_start_time", "start_time"),
        Index("ix_admission_visit_sessions_end_time", "end_time"),
    )


class VisitAttendee(Base):
    """A lead booked onto a visit session."""

    __tablename__ = "admission_visit_attendees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("admission_visit_sessions.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("admission_leads.id", ondelete="CASCADE"), nullable=False
    )

    attended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reminder_24h_notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reminder_2h_notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    no_show_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = _created_at()

    session: Mapped["VisitSession"] = relationship("VisitSession", back_populates="attendees")
    lead: Mapped["Lead"] = relationship("Lead", back_populates="visit_attendances")

    __table_args__ = (
        UniqueConstraint("session_id", "lead_id", name="uq_admission_visit_attendees_session_lead"),
        Index("ix_admission_visit_attendees_lead_id", "lead_id"),
    )


class Application(Base):
    """A formal admissions application raised for a lead."""

    __tablename__ = "admission_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("admission_leads.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    year_group: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus, name="admission_application_status"),
        nullable=False,
        default=ApplicationStatus.DRAFT,
    )
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    review_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    offer_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    offer_accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    enrolled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Review outcome
    decision: Mapped[ApplicationDecision | None] = mapped_column(
        Enum(ApplicationDecision, name="admission_decision"), nullable=True
    )
    decision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reviewed_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    lead: Mapped["Lead"] = relationship("Lead", back_populates="applications")
    tasks: Mapped[list["AutomationTask"]] = relationship(
        "AutomationTask", back_populates="application"
    )

    __table_args__ = (
        Index("ix_admission_applications_lead_id", "lead_id"),
        Index("ix_admission_applications_status", "status"),
    )


class AutomationTask(Base):
    """
    A follow-up task for admissions staff.

    Tasks created by the automation engine carry an automation_tag
    ("application-status:<key>" or "taster-no-show"); manual tasks leave it
    null.
    """

    __tablename__ = "admission_tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("admission_leads.id", ondelete="CASCADE"), nullable=True
    )
    application_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("admission_applications.id", ondelete="SET NULL"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    assignee_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="admission_task_status"),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    automation_tag: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    application: Mapped["Application | None"] = relationship(
        "Application", back_populates="tasks"
    )

    __table_args__ = (
        Index("ix_admission_tasks_application_id", "application_id", "status"),
        Index("ix_admission_tasks_lead_id", "lead_id"),
        Index("ix_admission_tasks_automation_tag", "automation_tag"),
    )
