"""
Application Lifecycle - State machine table

Status Flow:
    drafting ──tailored──────────▶ drafting
    drafting ──credentials absent─▶ needs_approval
    drafting ──automation ok─────▶ submitted (terminal)
    drafting ──automation failed─▶ failed
    drafting ──stage failed──────▶ failed   (tailoring, timeout, cancel)
    needs_approval ──approved────▶ drafting (resumes at automate)
    needs_approval ──rejected────▶ failed
    needs_approval ──expired─────▶ failed
    failed ──retry───────────────▶ drafting (restarts at tailor)

Every trigger has exactly one target status, so a transition is fully
described by its trigger; ``apply_trigger`` turns it into a
compare-and-set on the repository.
"""

from enum import Enum
from typing import Any, Dict, Tuple

from autoapply.models import Application, ApplicationStatus

DRAFTING = ApplicationStatus.DRAFTING
NEEDS_APPROVAL = ApplicationStatus.NEEDS_APPROVAL
SUBMITTED = ApplicationStatus.SUBMITTED
FAILED = ApplicationStatus.FAILED


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    TAILOR = "tailor"
    GATE = "gate"
    AUTOMATE = "automate"
    FINALIZE = "finalize"


class Trigger(str, Enum):
    TAILORED = "tailored"
    CREDENTIALS_ABSENT = "credentials_absent"
    AUTOMATION_SUCCEEDED = "automation_succeeded"
    AUTOMATION_FAILED = "automation_failed"
    STAGE_FAILED = "stage_failed"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPROVAL_EXPIRED = "approval_expired"
    RETRY_REQUESTED = "retry_requested"


TRANSITIONS: Dict[Tuple[ApplicationStatus, Trigger], ApplicationStatus] = {
    (DRAFTING, Trigger.TAILORED): DRAFTING,
    (DRAFTING, Trigger.CREDENTIALS_ABSENT): NEEDS_APPROVAL,
    (DRAFTING, Trigger.AUTOMATION_SUCCEEDED): SUBMITTED,
    (DRAFTING, Trigger.AUTOMATION_FAILED): FAILED,
    (DRAFTING, Trigger.STAGE_FAILED): FAILED,
    (NEEDS_APPROVAL, Trigger.APPROVED): DRAFTING,
    (NEEDS_APPROVAL, Trigger.REJECTED): FAILED,
    (NEEDS_APPROVAL, Trigger.APPROVAL_EXPIRED): FAILED,
    (FAILED, Trigger.RETRY_REQUESTED): DRAFTING,
}

def source_states(trigger: Trigger) -> Tuple[ApplicationStatus, ...]:
    return tuple(source for (source, t) in TRANSITIONS if t == trigger)


def target_state(trigger: Trigger) -> ApplicationStatus:
    for (_, t), target in TRANSITIONS.items():
        if t == trigger:
            return target
    raise KeyError(trigger)


async def apply_trigger(
    repository,
    application_id: str,
    trigger: Trigger,
    **fields: Any,
) -> Application:
    """
    Compare-and-set the application along the edge named by ``trigger``.

    Raises:
        ConflictError: The application is not in a status the trigger leaves from
    """
    return await repository.transition(
        application_id,
        source_states(trigger),
        target_state(trigger),
        **fields,
    )
