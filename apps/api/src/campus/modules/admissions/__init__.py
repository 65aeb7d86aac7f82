"""
Admissions Module

Handles the admissions pipeline for prospective families:
1. Lead stage changes with an append-only stage history
2. Taster visit sessions, attendee booking and check-in
3. Applications with automated follow-up tasks per status
4. Background jobs for visit reminders and no-show follow-ups

API Endpoints:
- POST /admissions/leads - Create lead
- GET /admissions/leads/{id} - Lead with stage history
- POST /admissions/leads/{id}/stage - Change lead stage
- POST /admissions/leads/bulk-stage - Change stage for several leads
- POST /admissions/visit-sessions - Schedule visit session
- POST /admissions/visit-sessions/{id}/attendees - Book attendee
- POST /admissions/visit-sessions/{id}/attendees/{attendee_id}/check-in - Check in
- POST /admissions/applications - Create application
- PATCH /admissions/applications/{id} - Update application
- GET /admissions/applications/{id}/tasks - Application tasks
- POST /admissions/tasks - Create task
- PATCH /admissions/tasks/{id}/status - Update task status

Background Jobs (via APScheduler):
- admissions_automation_tick: Runs every minute; sends 24h and 2h visit
  reminders, then marks no-shows for sessions that ended 24 hours ago
"""

from .jobs import register_admissions_jobs
from .router import router

__all__ = ["router", "register_admissions_jobs"]
