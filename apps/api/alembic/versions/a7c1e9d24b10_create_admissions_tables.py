"""create admissions tables

Revision ID: a7c1e9d24b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration:
1. Creates the enum types for lead stage, application status/decision and task status
2. Creates admission_leads and the append-only admission_lead_stage_history
3. Creates admission_visit_sessions (with automation claim columns) and
   admission_visit_attendees
4. Creates admission_applications and admission_tasks

Enum labels are the Python enum member names, which is what SQLAlchemy's
Enum type stores.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a7c1e9d24b10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


lead_stage = postgresql.ENUM(
    "NEW",
    "CONTACTED",
    "TASTER_BOOKED",
    "ATTENDED",
    "OFFER",
    "ACCEPTED",
    "ENROLLED",
    "ONBOARDED",
    name="lead_stage",
    create_type=False,
)

application_status = postgresql.ENUM(
    "DRAFT",
    "SUBMITTED",
    "UNDER_REVIEW",
    "OFFER_SENT",
    "ACCEPTED",
    "ENROLLED",
    "REJECTED",
    "WITHDRAWN",
    name="admission_application_status",
    create_type=False,
)

application_decision = postgresql.ENUM(
    "OFFERED",
    "WAITLISTED",
    "DECLINED",
    name="admission_decision",
    create_type=False,
)

task_status = postgresql.ENUM(
    "PENDING",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    name="admission_task_status",
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create admissions enum types and tables."""
    bind = op.get_bind()
    for enum_type in (lead_stage, application_status, application_decision, task_status):
        enum_type.create(bind, checkfirst=True)

    # Leads
    op.create_table(
        "admission_leads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("assigned_staff_id", sa.Uuid(), nullable=True),
        # Parent contact
        sa.Column("parent_first_name", sa.String(length=100), nullable=False),
        sa.Column("parent_last_name", sa.String(length=100), nullable=False),
        sa.Column("parent_email", sa.String(length=255), nullable=False),
        sa.Column("parent_phone", sa.String(length=30), nullable=True),
        # Student
        sa.Column("student_first_name", sa.String(length=100), nullable=True),
        sa.Column("student_last_name", sa.String(length=100), nullable=True),
        sa.Column("programme_interest", sa.String(length=200), nullable=True),
        # Context
        sa.Column("source", sa.String(length=100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        # Pipeline
        sa.Column("stage", lead_stage, nullable=False),
        sa.Column("new_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("taster_booked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("taster_attended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admission_leads_stage", "admission_leads", ["stage"])
    op.create_index("ix_admission_leads_parent_email", "admission_leads", ["parent_email"])
    op.create_index("ix_admission_leads_branch_id", "admission_leads", ["branch_id"])

    # Stage history (append-only)
    op.create_table(
        "admission_lead_stage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", lead_stage, nullable=True),
        sa.Column("to_stage", lead_stage, nullable=False),
        sa.Column("changed_by_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["admission_leads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admission_lead_stage_history_lead_id",
        "admission_lead_stage_history",
        ["lead_id", "changed_at"],
    )

    # Visit sessions
    op.create_table(
        "admission_visit_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=True),
        # Automation claim flags
        sa.Column("reminder_24h_stamped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_2h_stamped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_sweep_completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admission_visit_sessions_start_time", "admission_visit_sessions", ["start_time"]
    )
    op.create_index("ix_admission_visit_sessions_end_time", "admission_visit_sessions", ["end_time"])

    op.create_table(
        "admission_visit_attendees",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("attended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_24h_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_2h_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["session_id"], ["admission_visit_sessions.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["lead_id"], ["admission_leads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "session_id", "lead_id", name="uq_admission_visit_attendees_session_lead"
        ),
    )
    op.create_index(
        "ix_admission_visit_attendees_lead_id", "admission_visit_attendees", ["lead_id"]
    )

    # Applications
    op.create_table(
        "admission_applications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("year_group", sa.String(length=50), nullable=True),
        sa.Column("status", application_status, nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("offer_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("offer_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decision", application_decision, nullable=True),
        sa.Column("decision_notes", sa.Text(), nullable=True),
        sa.Column("decision_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["lead_id"], ["admission_leads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admission_applications_lead_id", "admission_applications", ["lead_id"])
    op.create_index("ix_admission_applications_status", "admission_applications", ["status"])

    # Tasks
    op.create_table(
        "admission_tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("application_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assignee_id", sa.Uuid(), nullable=True),
        sa.Column("created_by_id", sa.Uuid(), nullable=True),
        sa.Column("status", task_status, nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("automation_tag", sa.String(length=100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["lead_id"], ["admission_leads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["application_id"], ["admission_applications.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admission_tasks_application_id", "admission_tasks", ["application_id", "status"]
    )
    op.create_index("ix_admission_tasks_lead_id", "admission_tasks", ["lead_id"])
    op.create_index("ix_admission_tasks_automation_tag", "admission_tasks", ["automation_tag"])


def downgrade() -> None:
    """Drop admissions tables and enum types."""
    op.drop_table("admission_tasks")
    op.drop_table("admission_applications")
    op.drop_table("admission_visit_attendees")
    op.drop_table("admission_visit_sessions")
    op.drop_table("admission_lead_stage_history")
    op.drop_table("admission_leads")

    bind = op.get_bind()
    for enum_type in (task_status, application_decision, application_status, lead_stage):
        enum_type.drop(bind, checkfirst=True)
