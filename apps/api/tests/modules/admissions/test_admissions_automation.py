"""
Integration tests for the admissions engine against SQLite.

Every assertion re-reads rows through a fresh session, so it sees what was
committed rather than what a session has cached.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from campus.modules.admissions import repository, service, tasks
from campus.modules.admissions.jobs import (
    REMINDER_2H,
    REMINDER_24H,
    _claim_session_reminder,
    run_admissions_automation,
    send_visit_reminders,
    sweep_no_shows,
)
from campus.modules.admissions.models import (
    Application,
    ApplicationStatus,
    Lead,
    LeadStage,
    TaskStatus,
    VisitAttendee,
    VisitSession,
)
from campus.modules.admissions.schemas import (
    ApplicationCreate,
    ApplicationUpdate,
    LeadCreate,
    TaskCreate,
)
from campus.modules.admissions.notifications import EmailNotificationSender
from campus.modules.admissions.stages import sequential_stage_policy

# ============================================
# Visit reminders
# ============================================


class TestVisitReminders:
    """Reminder passes against a real database."""

    @pytest.mark.asyncio
    async def test_reminder_sent_once_and_stamped(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee, fetch
    ):
        """Only attendees who have not checked in are reminded, and only once."""
        visit_session = await make_visit_session(now + timedelta(hours=24))
        expected = await make_lead(parent_email="ama@example.com")
        checked_in = await make_lead()
        waiting = await make_attendee(visit_session.id, expected.id)
        arrived = await make_attendee(
            visit_session.id, checked_in.id, attended_at=now - timedelta(minutes=1)
        )

        first = await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        )
        second = await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        )

        assert first["sessions_claimed"] == 1
        assert first["notifications_sent"] == 1
        assert second["sessions_found"] == 0
        assert len(notifier.sent) == 1

        payload = notifier.sent[0]
        assert payload.window == "24h"
        assert payload.session.id == visit_session.id
        assert payload.attendee.id == waiting.id
        assert payload.attendee.parent_email == "ama@example.com"

        assert (await fetch(VisitSession, visit_session.id)).reminder_24h_stamped_at == now
        assert (await fetch(VisitAttendee, waiting.id)).reminder_24h_notified_at == now
        assert (await fetch(VisitAttendee, arrived.id)).reminder_24h_notified_at is None

    @pytest.mark.asyncio
    async def test_window_bounds(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee
    ):
        """Sessions on the tolerance boundary are included; sessions beyond it are not."""
        on_edge = await make_visit_session(now + timedelta(hours=24, minutes=5))
        too_late = await make_visit_session(now + timedelta(hours=24, minutes=6))
        too_early = await make_visit_session(now + timedelta(hours=23, minutes=54))
        for visit_session in (on_edge, too_late, too_early):
            lead = await make_lead()
            await make_attendee(visit_session.id, lead.id)

        result = await send_visit_reminders(
            REMINDER_24H,
            now=now,
            session_factory=session_factory,
            notifier=notifier,
            tolerance_minutes=5,
        )

        assert result["sessions_found"] == 1
        assert [p.session.id for p in notifier.sent] == [on_edge.id]

    @pytest.mark.asyncio
    async def test_each_offset_is_sent_separately(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee, fetch
    ):
        visit_session = await make_visit_session(now + timedelta(hours=24))
        lead = await make_lead()
        attendee = await make_attendee(visit_session.id, lead.id)
        later = now + timedelta(hours=22)

        await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        )
        await send_visit_reminders(
            REMINDER_2H, now=later, session_factory=session_factory, notifier=notifier
        )

        assert [p.window for p in notifier.sent] == ["24h", "2h"]
        stored = await fetch(VisitAttendee, attendee.id)
        assert stored.reminder_24h_notified_at == now
        assert stored.reminder_2h_notified_at == later

    @pytest.mark.asyncio
    async def test_session_without_eligible_attendees_is_still_claimed(
        self, now, session_factory, notifier, make_visit_session, fetch
    ):
        visit_session = await make_visit_session(now + timedelta(hours=2))

        result = await send_visit_reminders(
            REMINDER_2H, now=now, session_factory=session_factory, notifier=notifier
        )

        assert result["sessions_claimed"] == 1
        assert notifier.sent == []
        assert (await fetch(VisitSession, visit_session.id)).reminder_2h_stamped_at == now

    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_stamps(
        self,
        now,
        session_factory,
        failing_notifier,
        make_lead,
        make_visit_session,
        make_attendee,
        fetch,
    ):
        """A failed send is logged, not retried: the stamps stay committed."""
        visit_session = await make_visit_session(now + timedelta(hours=24))
        lead = await make_lead()
        attendee = await make_attendee(visit_session.id, lead.id)

        first = await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=failing_notifier
        )
        second = await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=failing_notifier
        )

        assert first["notification_failures"] == 1
        assert first["notifications_sent"] == 0
        assert first["total_errors"] == 0
        assert second["sessions_found"] == 0
        assert len(failing_notifier.sent) == 1
        assert (await fetch(VisitAttendee, attendee.id)).reminder_24h_notified_at == now

    @pytest.mark.asyncio
    async def test_stale_snapshot_loses_claim(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee
    ):
        """A worker whose candidate list predates another worker's claim skips the session."""
        visit_session = await make_visit_session(now + timedelta(hours=24))
        lead = await make_lead()
        await make_attendee(visit_session.id, lead.id)

        async with session_factory() as db:
            stale = await repository.get_sessions_in_reminder_window(
                db,
                REMINDER_24H.session_stamp_field,
                now + timedelta(hours=23),
                now + timedelta(hours=25),
            )

        await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        )
        reminders = await _claim_session_reminder(stale[0], REMINDER_24H, now, session_factory)

        assert reminders is None
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_check_in_after_snapshot_is_not_reminded(
        self, now, session_factory, make_lead, make_visit_session, make_attendee, fetch
    ):
        """Only attendees the claim actually stamps are handed to the notifier."""
        visit_session = await make_visit_session(now + timedelta(hours=24))
        early = await make_lead()
        waiting = await make_lead()
        early_attendee = await make_attendee(visit_session.id, early.id)
        waiting_attendee = await make_attendee(visit_session.id, waiting.id)

        async with session_factory() as db:
            snapshot = await repository.get_sessions_in_reminder_window(
                db,
                REMINDER_24H.session_stamp_field,
                now + timedelta(hours=23),
                now + timedelta(hours=25),
            )
        async with session_factory() as db:
            await service.record_attendance(
                db, visit_session.id, early_attendee.id, now=now
            )

        reminders = await _claim_session_reminder(
            snapshot[0], REMINDER_24H, now, session_factory
        )

        assert [r.attendee.id for r in reminders] == [waiting_attendee.id]
        assert (await fetch(VisitAttendee, early_attendee.id)).reminder_24h_notified_at is None
        assert (await fetch(VisitAttendee, waiting_attendee.id)).reminder_24h_notified_at == now

    @pytest.mark.asyncio
    async def test_already_stamped_session_is_excluded(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee, fetch
    ):
        """A stamped session is never picked up again, even with attendees still waiting."""
        visit_session = await make_visit_session(
            now + timedelta(hours=24), reminder_24h_stamped_at=now - timedelta(minutes=1)
        )
        lead = await make_lead()
        attendee = await make_attendee(visit_session.id, lead.id)

        result = await send_visit_reminders(
            REMINDER_24H, now=now, session_factory=session_factory, notifier=notifier
        )

        assert result["sessions_found"] == 0
        assert notifier.sent == []
        assert (await fetch(VisitAttendee, attendee.id)).reminder_24h_notified_at is None

    @pytest.mark.asyncio
    async def test_unreachable_attendee_is_counted_as_skipped(
        self, now, session_factory, make_lead, make_visit_session, make_attendee
    ):
        visit_session = await make_visit_session(now + timedelta(hours=24))
        reachable = await make_lead(parent_email="ama@example.com")
        unreachable = await make_lead(parent_email="")
        await make_attendee(visit_session.id, reachable.id)
        await make_attendee(visit_session.id, unreachable.id)
        send = AsyncMock(return_value=True)

        with patch("campus.modules.admissions.notifications.send_visit_reminder", send):
            result = await send_visit_reminders(
                REMINDER_24H,
                now=now,
                session_factory=session_factory,
                notifier=EmailNotificationSender(),
            )

        assert result["notifications_sent"] == 1
        assert result["notifications_skipped"] == 1
        assert result["notification_failures"] == 0
        assert send.await_count == 1
        assert send.call_args.kwargs["to_email"] == "ama@example.com"

    @pytest.mark.asyncio
    async def test_concurrent_workers_claim_once(
        self,
        now,
        session_factory,
        make_notifier,
        make_lead,
        make_visit_session,
        make_attendee,
        fetch,
    ):
        visit_session = await make_visit_session(now + timedelta(hours=24))
        for _ in range(3):
            lead = await make_lead()
            await make_attendee(visit_session.id, lead.id)
        workers = [make_notifier(), make_notifier()]

        results = await asyncio.gather(
            *(
                send_visit_reminders(
                    REMINDER_24H, now=now, session_factory=session_factory, notifier=worker
                )
                for worker in workers
            )
        )

        assert sum(r["sessions_claimed"] for r in results) == 1
        assert sum(len(worker.sent) for worker in workers) == 3
        assert (await fetch(VisitSession, visit_session.id)).reminder_24h_stamped_at == now


# ============================================
# No-show sweep
# ============================================


class TestNoShowSweep:
    """No-show sweep against a real database."""

    @pytest.mark.asyncio
    async def test_sweep_marks_no_shows_once(
        self,
        now,
        session_factory,
        make_lead,
        make_visit_session,
        make_attendee,
        fetch,
        fetch_tasks,
    ):
        visit_session = await make_visit_session(now - timedelta(hours=26))
        missed_a = await make_lead()
        missed_b = await make_lead()
        came = await make_lead()
        absent_a = await make_attendee(visit_session.id, missed_a.id)
        absent_b = await make_attendee(visit_session.id, missed_b.id)
        present = await make_attendee(
            visit_session.id, came.id, attended_at=now - timedelta(hours=26)
        )

        first = await sweep_no_shows(now=now, session_factory=session_factory, delay_hours=24)
        second = await sweep_no_shows(now=now, session_factory=session_factory, delay_hours=24)

        assert first["sessions_swept"] == 1
        assert first["no_shows_marked"] == 2
        assert first["tasks_created"] == 2
        assert second["sessions_found"] == 0

        assert (await fetch(VisitSession, visit_session.id)).no_show_sweep_completed_at == now
        assert (await fetch(VisitAttendee, absent_a.id)).no_show_at == now
        assert (await fetch(VisitAttendee, absent_b.id)).no_show_at == now
        assert (await fetch(VisitAttendee, present.id)).no_show_at is None

        follow_ups = await fetch_tasks(automation_tag=tasks.NO_SHOW_TAG)
        assert sorted(str(t.lead_id) for t in follow_ups) == sorted(
            [str(missed_a.id), str(missed_b.id)]
        )
        assert all(t.status == TaskStatus.PENDING for t in follow_ups)
        assert all(t.extra_data["session_id"] == str(visit_session.id) for t in follow_ups)
        assert all(t.due_at == now + timedelta(days=1) for t in follow_ups)

    @pytest.mark.asyncio
    async def test_recent_session_is_not_swept(
        self, now, session_factory, make_lead, make_visit_session, make_attendee, fetch
    ):
        visit_session = await make_visit_session(now - timedelta(hours=24))
        lead = await make_lead()
        attendee = await make_attendee(visit_session.id, lead.id)

        result = await sweep_no_shows(now=now, session_factory=session_factory, delay_hours=24)

        assert result["sessions_found"] == 0
        assert (await fetch(VisitAttendee, attendee.id)).no_show_at is None

    @pytest.mark.asyncio
    async def test_failed_task_insert_rolls_back_whole_session(
        self,
        now,
        session_factory,
        make_lead,
        make_visit_session,
        make_attendee,
        fetch,
        fetch_tasks,
    ):
        """The claim is rolled back with everything else, so the next tick retries."""
        visit_session = await make_visit_session(now - timedelta(hours=30))
        first_lead = await make_lead()
        second_lead = await make_lead()
        await make_attendee(visit_session.id, first_lead.id)
        await make_attendee(visit_session.id, second_lead.id)

        real_create = tasks.create_no_show_follow_up
        calls = 0

        async def fail_second(db, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("insert failed")
            return await real_create(db, **kwargs)

        with patch.object(tasks, "create_no_show_follow_up", AsyncMock(side_effect=fail_second)):
            failed = await sweep_no_shows(now=now, session_factory=session_factory, delay_hours=24)

        assert failed["total_errors"] == 1
        assert failed["sessions_swept"] == 0
        assert (await fetch(VisitSession, visit_session.id)).no_show_sweep_completed_at is None
        assert await fetch_tasks(automation_tag=tasks.NO_SHOW_TAG) == []

        retried = await sweep_no_shows(now=now, session_factory=session_factory, delay_hours=24)

        assert retried["sessions_swept"] == 1
        assert retried["tasks_created"] == 2
        assert len(await fetch_tasks(automation_tag=tasks.NO_SHOW_TAG)) == 2


# ============================================
# Automation tick
# ============================================


class TestAutomationTick:
    """The combined tick against a real database."""

    @pytest.mark.asyncio
    async def test_sweep_runs_when_reminder_pass_fails(
        self, now, session_factory, notifier, make_lead, make_visit_session, make_attendee, fetch
    ):
        visit_session = await make_visit_session(now - timedelta(hours=48))
        lead = await make_lead()
        await make_attendee(visit_session.id, lead.id)

        with patch.object(
            repository,
            "get_sessions_in_reminder_window",
            AsyncMock(side_effect=RuntimeError("query failed")),
        ):
            result = await run_admissions_automation(
                clock=lambda: now, session_factory=session_factory, notifier=notifier
            )

        assert result["failed_passes"] == ["reminders_24h", "reminders_2h"]
        assert result["no_show_sweep"]["sessions_swept"] == 1
        assert (await fetch(VisitSession, visit_session.id)).no_show_sweep_completed_at == now

    @pytest.mark.asyncio
    async def test_taster_lifecycle(
        self, now, session_factory, notifier, make_visit_session, fetch, fetch_tasks
    ):
        """Two booked leads: both are reminded, one attends, the other gets a follow-up."""
        async with session_factory() as db:
            attending = await service.create_lead(
                db,
                LeadCreate(
                    parent_first_name="Kofi", parent_last_name="Boateng",
                    parent_email="kofi@example.com",
                ),
                now=now,
            )
            missing = await service.create_lead(
                db,
                LeadCreate(
                    parent_first_name="Efua", parent_last_name="Asante",
                    parent_email="efua@example.com",
                ),
                now=now,
            )
            await service.bulk_transition_leads(
                db, [attending.id, missing.id], LeadStage.TASTER_BOOKED, now=now
            )

        visit_session = await make_visit_session(now + timedelta(hours=24))
        async with session_factory() as db:
            attendee = await service.add_visit_attendee(db, visit_session.id, attending.id)
            no_show = await service.add_visit_attendee(db, visit_session.id, missing.id)

        async def tick(at):
            return await run_admissions_automation(
                clock=lambda: at, session_factory=session_factory, notifier=notifier
            )

        await tick(now)
        await tick(now + timedelta(hours=22))

        async with session_factory() as db:
            await service.record_attendance(
                db, visit_session.id, attendee.id, now=now + timedelta(hours=24, minutes=5)
            )

        sweep_at = now + timedelta(hours=49)
        result = await tick(sweep_at)
        await tick(sweep_at + timedelta(minutes=1))

        assert result["failed_passes"] == []
        assert sorted((p.window, p.attendee.parent_email) for p in notifier.sent) == [
            ("24h", "efua@example.com"),
            ("24h", "kofi@example.com"),
            ("2h", "efua@example.com"),
            ("2h", "kofi@example.com"),
        ]

        assert (await fetch(VisitAttendee, attendee.id)).no_show_at is None
        assert (await fetch(VisitAttendee, no_show.id)).no_show_at == sweep_at
        follow_ups = await fetch_tasks(automation_tag=tasks.NO_SHOW_TAG)
        assert [t.lead_id for t in follow_ups] == [missing.id]


# ============================================
# Lead stage history
# ============================================


class TestLeadStageHistory:
    """Stage changes against a real database."""

    @pytest.mark.asyncio
    async def test_history_has_one_row_per_change(self, now, session_factory, fetch):
        stages = [LeadStage.CONTACTED, LeadStage.TASTER_BOOKED, LeadStage.CONTACTED]

        async with session_factory() as db:
            lead = await service.create_lead(
                db,
                LeadCreate(
                    parent_first_name="Ama", parent_last_name="Mensah",
                    parent_email="ama@example.com",
                ),
                now=now,
            )
            for i, stage in enumerate(stages, start=1):
                await service.transition_lead(
                    db, lead.id, stage, reason=f"step {i}", now=now + timedelta(hours=i)
                )
            # Same stage again is a no-op
            await service.transition_lead(
                db, lead.id, LeadStage.CONTACTED, now=now + timedelta(hours=10)
            )

        async with session_factory() as db:
            history = await service.list_lead_stage_history(db, lead.id)

        assert len(history) == len(stages) + 1
        assert [(h.from_stage, h.to_stage) for h in history] == [
            (None, LeadStage.NEW),
            (LeadStage.NEW, LeadStage.CONTACTED),
            (LeadStage.CONTACTED, LeadStage.TASTER_BOOKED),
            (LeadStage.TASTER_BOOKED, LeadStage.CONTACTED),
        ]
        assert history[0].reason == service.LEAD_CREATED_REASON
        assert history[-1].reason == "step 3"

        stored = await fetch(Lead, lead.id)
        assert stored.stage == LeadStage.CONTACTED
        assert stored.new_at == now
        assert stored.contacted_at == now + timedelta(hours=1)
        assert stored.taster_booked_at == now + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_rejected_bulk_change_writes_nothing(self, now, session_factory, make_lead, fetch):
        ahead = await make_lead(stage=LeadStage.ENROLLED)
        behind = await make_lead(stage=LeadStage.NEW)

        async with session_factory() as db:
            with pytest.raises(service.InvalidStageTransitionError) as exc_info:
                await service.bulk_transition_leads(
                    db,
                    [behind.id, ahead.id],
                    LeadStage.ATTENDED,
                    now=now,
                    policy=sequential_stage_policy,
                )
            await db.rollback()

        assert exc_info.value.lead_ids == [ahead.id]
        assert (await fetch(Lead, behind.id)).stage == LeadStage.NEW
        async with session_factory() as db:
            assert await repository.list_stage_history(db, behind.id) == []


# ============================================
# Application task automation
# ============================================


class TestApplicationTaskAutomation:
    """Application status hooks against a real database."""

    @pytest.mark.asyncio
    async def test_status_changes_swap_automation_tasks(
        self, now, session_factory, make_lead, fetch_tasks
    ):
        lead = await make_lead()

        async with session_factory() as db:
            application = await service.create_application(
                db,
                ApplicationCreate(lead_id=lead.id, status=ApplicationStatus.SUBMITTED),
                now=now,
            )
            manual = await service.create_task(
                db, TaskCreate(title="Call the family", application_id=application.id), now=now
            )

        def by_tag(rows):
            return {t.automation_tag: t.status for t in rows}

        submitted = await fetch_tasks(application_id=application.id)
        assert by_tag(submitted) == {
            "application-status:review": TaskStatus.PENDING,
            None: TaskStatus.PENDING,
        }

        async with session_factory() as db:
            await service.update_application(
                db,
                application.id,
                ApplicationUpdate(status=ApplicationStatus.UNDER_REVIEW),
                now=now + timedelta(days=1),
            )

        under_review = await fetch_tasks(application_id=application.id)
        assert by_tag(under_review) == {
            "application-status:review": TaskStatus.CANCELLED,
            "application-status:request_documents": TaskStatus.PENDING,
            None: TaskStatus.PENDING,
        }
        request_documents = next(
            t for t in under_review if t.automation_tag == "application-status:request_documents"
        )
        assert request_documents.due_at == now + timedelta(days=4)

        async with session_factory() as db:
            withdrawn = await service.update_application(
                db,
                application.id,
                ApplicationUpdate(status=ApplicationStatus.WITHDRAWN),
                now=now + timedelta(days=2),
            )

        final = await fetch_tasks(application_id=application.id)
        assert len(final) == 3
        assert all(
            t.status == TaskStatus.CANCELLED for t in final if t.automation_tag is not None
        )
        assert next(t for t in final if t.id == manual.id).status == TaskStatus.PENDING
        assert withdrawn.decision_at == now + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_rejected_status_change_leaves_tasks(
        self, now, session_factory, make_lead, fetch_tasks
    ):
        lead = await make_lead()
        async with session_factory() as db:
            application = await service.create_application(
                db,
                ApplicationCreate(lead_id=lead.id, status=ApplicationStatus.SUBMITTED),
                now=now,
            )

        async with session_factory() as db:
            with pytest.raises(service.InvalidApplicationStatusTransitionError):
                await service.update_application(
                    db, application.id, ApplicationUpdate(status=ApplicationStatus.ENROLLED)
                )

        rows = await fetch_tasks(application_id=application.id)
        assert [(t.automation_tag, t.status) for t in rows] == [
            ("application-status:review", TaskStatus.PENDING)
        ]

    @pytest.mark.asyncio
    async def test_submitted_then_rejected(self, now, session_factory, fetch, fetch_tasks):
        """Lead to rejection: history, review task, decision time and cancellation."""
        submitted_at = now + timedelta(hours=1)
        rejected_at = now + timedelta(days=1)

        async with session_factory() as db:
            lead = await service.create_lead(
                db,
                LeadCreate(
                    parent_first_name="Kofi", parent_last_name="Boateng",
                    parent_email="kofi@example.com",
                ),
                now=now,
            )
        async with session_factory() as db:
            history = await service.list_lead_stage_history(db, lead.id)

        assert (await fetch(Lead, lead.id)).stage == LeadStage.NEW
        assert [(h.from_stage, h.to_stage) for h in history] == [(None, LeadStage.NEW)]

        async with session_factory() as db:
            application = await service.create_application(
                db,
                ApplicationCreate(lead_id=lead.id, status=ApplicationStatus.SUBMITTED),
                now=submitted_at,
            )

        stored = await fetch(Application, application.id)
        assert stored.submitted_at == submitted_at
        opened = await fetch_tasks(application_id=application.id)
        assert [t.automation_tag for t in opened] == ["application-status:review"]
        assert opened[0].status == TaskStatus.PENDING
        assert opened[0].due_at == submitted_at + timedelta(days=2)

        async with session_factory() as db:
            await service.update_application(
                db,
                application.id,
                ApplicationUpdate(status=ApplicationStatus.REJECTED),
                now=rejected_at,
            )

        stored = await fetch(Application, application.id)
        assert stored.status == ApplicationStatus.REJECTED
        assert stored.decision_at == rejected_at
        review = (await fetch_tasks(application_id=application.id))[0]
        assert review.id == opened[0].id
        assert review.status == TaskStatus.CANCELLED
        assert review.completed_at is None
