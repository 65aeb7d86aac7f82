"""
Lead Stage Rules

Pure functions for validating lead stage changes and stamping stage
milestones. The transition rule is a pluggable predicate so callers can
enforce a stricter pipeline without touching the service.
"""

from collections.abc import Callable
from datetime import datetime

from .models import Lead, LeadStage

StageTransitionPolicy = Callable[[LeadStage, LeadStage], bool]

# Pipeline order, used by sequential_stage_policy
STAGE_SEQUENCE: list[LeadStage] = [
    LeadStage.NEW,
    LeadStage.CONTACTED,
    LeadStage.TASTER_BOOKED,
    LeadStage.ATTENDED,
    LeadStage.OFFER,
    LeadStage.ACCEPTED,
    LeadStage.ENROLLED,
    LeadStage.ONBOARDED,
]

# Stage -> Lead column stamped the first time the lead enters that stage
STAGE_MILESTONE_FIELDS: dict[LeadStage, str] = {
    LeadStage.NEW: "new_at",
    LeadStage.CONTACTED: "contacted_at",
    LeadStage.TASTER_BOOKED: "taster_booked_at",
    LeadStage.ATTENDED: "taster_attended_at",
    LeadStage.OFFER: "applied_at",
    LeadStage.ENROLLED: "enrolled_at",
}


def allow_any_stage_change(current: LeadStage, target: LeadStage) -> bool:
    """Default policy: any move to a different stage is allowed."""
    return current != target


def sequential_stage_policy(current: LeadStage, target: LeadStage) -> bool:
    """Only allow forward moves along STAGE_SEQUENCE."""
    return STAGE_SEQUENCE.index(target) > STAGE_SEQUENCE.index(current)


DEFAULT_STAGE_POLICY: StageTransitionPolicy = allow_any_stage_change


def validate_stage_transition(
    current: LeadStage,
    target: LeadStage,
    policy: StageTransitionPolicy = DEFAULT_STAGE_POLICY,
) -> bool:
    """
    Check whether a lead may move from current to target.

    A move to the current stage is never a transition, whatever the policy
    says; callers treat it as a no-op.
    """
    if current == target:
        return False
    return policy(current, target)


def apply_stage_milestone(lead: Lead, stage: LeadStage, now: datetime) -> None:
    """Stamp the milestone column for stage, unless it is already set."""
    field = STAGE_MILESTONE_FIELDS.get(stage)
    if field is not None and getattr(lead, field) is None:
        setattr(lead, field, now)
