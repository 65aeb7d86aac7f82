"""
Fixtures for admissions tests.

Unit tests use mock sessions. Integration tests run against a file-backed
SQLite database (aiosqlite) so each session gets its own connection, the
same way sessions behave against PostgreSQL.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from campus.core.database import Base
from campus.modules.admissions.models import (
    Application,
    ApplicationStatus,
    AutomationTask,
    Lead,
    LeadStage,
    VisitAttendee,
    VisitSession,
)

NOW = datetime(2025, 1, 1, 0, 0, tzinfo=UTC)


class RecordingNotifier:
    """Notification sender that records payloads, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def notify_visit_reminder(self, payload) -> bool:
        self.sent.append(payload)
        if self.fail:
            raise RuntimeError("provider unavailable")
        return True


# ============================================
# Unit test fixtures
# ============================================


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def make_notifier():
    return RecordingNotifier


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.get = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    return db


def _lead(stage: LeadStage = LeadStage.NEW):
    lead = MagicMock(spec=Lead)
    lead.id = uuid4()
    lead.stage = stage
    lead.assigned_staff_id = None
    lead.new_at = None
    lead.contacted_at = None
    lead.taster_booked_at = None
    lead.taster_attended_at = None
    lead.applied_at = None
    lead.enrolled_at = None
    return lead


@pytest.fixture
def sample_lead():
    """A lead at NEW with no milestones stamped."""
    return _lead()


@pytest.fixture
def make_mock_lead():
    return _lead


@pytest.fixture
def sample_application(sample_lead):
    """A SUBMITTED application for sample_lead."""
    application = MagicMock(spec=Application)
    application.id = uuid4()
    application.lead_id = sample_lead.id
    application.status = ApplicationStatus.SUBMITTED
    application.reviewed_by_id = None
    application.submitted_at = NOW - timedelta(days=1)
    application.review_started_at = None
    application.offer_sent_at = None
    application.offer_accepted_at = None
    application.enrolled_at = None
    application.decision_at = None
    return application


# ============================================
# Integration fixtures (SQLite)
# ============================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'admissions.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_lead(session_factory):
    """Insert a lead and return it."""

    async def _make(stage: LeadStage = LeadStage.NEW, **fields) -> Lead:
        fields.setdefault("parent_first_name", "Ama")
        fields.setdefault("parent_last_name", "Mensah")
        fields.setdefault("parent_email", f"parent-{uuid4().hex[:8]}@example.com")
        async with session_factory() as db:
            lead = Lead(stage=stage, tags=[], **fields)
            db.add(lead)
            await db.commit()
            return lead

    return _make


@pytest.fixture
def make_visit_session(session_factory):
    """Insert a visit session starting at start_time (one hour long by default)."""

    async def _make(start_time: datetime, duration: timedelta = timedelta(hours=1), **fields):
        fields.setdefault("title", "Year 7 Taster")
        fields.setdefault("branch_id", uuid4())
        async with session_factory() as db:
            visit_session = VisitSession(
                start_time=start_time,
                end_time=start_time + duration,
                **fields,
            )
            db.add(visit_session)
            await db.commit()
            return visit_session

    return _make


@pytest.fixture
def make_attendee(session_factory):
    """Book a lead onto a session."""

    async def _make(session_id, lead_id, **fields) -> VisitAttendee:
        async with session_factory() as db:
            attendee = VisitAttendee(session_id=session_id, lead_id=lead_id, **fields)
            db.add(attendee)
            await db.commit()
            return attendee

    return _make


@pytest.fixture
def fetch(session_factory):
    """Re-read a row by primary key in a fresh session."""

    async def _fetch(model, id_):
        async with session_factory() as db:
            return await db.get(model, id_)

    return _fetch


@pytest.fixture
def fetch_tasks(session_factory):
    """All tasks, optionally filtered by automation tag, oldest first."""

    async def _fetch(**filters) -> list[AutomationTask]:
        async with session_factory() as db:
            query = select(AutomationTask).order_by(AutomationTask.created_at, AutomationTask.id)
            for name, value in filters.items():
                query = query.where(getattr(AutomationTask, name) == value)
            result = await db.execute(query)
            return list(result.scalars().all())

    return _fetch
