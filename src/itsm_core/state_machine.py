"""State machine for the change request approval workflow.

Stage flow (stage 1 drafting is folded into creation):

    2 LM approval -> 3 HoIT approval + IT officer assignment -> 4 IT officer
    assessment -> 5 requestor test confirmation -> 6 QA validation ->
    7 HoIT production approval (risk acceptance) -> 8 InfoSec final approval
    -> 9 deployment -> 10 NOC closure

Approve advances exactly one stage. Reject freezes the stage and sets the
terminal Rejected status. Stage 10 only ends through NOC closure.
"""
import logging
from typing import NamedTuple

from .errors import PermissionDeniedError, ValidationError
from .models import CRStatus, Role, TERMINAL_STATUSES
from .roles import Actor

logger = logging.getLogger("itsm-core.state_machine")

FIRST_STAGE = 2
CLOSURE_STAGE = 10
REQUESTOR_CONFIRMATION_STAGE = 5


class StageTransition(NamedTuple):
    next_stage: int
    next_status: CRStatus


# Maps current stage → (next stage, next status) for a generic approval
STAGE_FLOW: dict[int, StageTransition] = {
    2: StageTransition(3, CRStatus.PENDING_HOIT_APPROVAL),
    3: StageTransition(4, CRStatus.ASSIGNED_TO_IT_OFFICER),
    4: StageTransition(5, CRStatus.REQUESTOR_TEST_CONFIRMATION),
    5: StageTransition(6, CRStatus.PENDING_QA_VALIDATION),
    6: StageTransition(7, CRStatus.PENDING_PRODUCTION_APPROVAL),
    7: StageTransition(8, CRStatus.PENDING_FINAL_APPROVAL),
    8: StageTransition(9, CRStatus.READY_TO_DEPLOY),
    9: StageTransition(10, CRStatus.WAITING_FOR_CLOSURE),
}

# Maps stage → role allowed to approve or reject at that stage.
# Stage 5 is matched on identity (the original requestor), not on role.
STAGE_APPROVER_ROLES: dict[int, Role] = {
    2: Role.LINE_MANAGER,
    3: Role.HEAD_OF_IT,
    4: Role.IT_OFFICER,
    5: Role.REQUESTOR,
    6: Role.QA_OFFICER,
    7: Role.HEAD_OF_IT,
    8: Role.HEAD_OF_INFOSEC,
    9: Role.IT_OFFICER,
    10: Role.NOC,
}

# Status a CR carries while sitting at each stage
STAGE_STATUS: dict[int, CRStatus] = {
    FIRST_STAGE: CRStatus.PENDING_LM_APPROVAL,
    **{transition.next_stage: transition.next_status for transition in STAGE_FLOW.values()},
}

# In-flight statuses (used by statistics and role queues)
PENDING_STATUSES: tuple[CRStatus, ...] = tuple(STAGE_STATUS[stage] for stage in sorted(STAGE_STATUS))


def get_next_stage(current_stage: int) -> StageTransition:
    """
    Look up the stage/status an approval at `current_stage` leads to.

    Raises:
        ValidationError: For stage 10 (closure only) or an unknown stage
    """
    if current_stage == CLOSURE_STAGE:
        raise ValidationError(
            "CR is waiting for NOC closure. Use the close operation to complete it."
        )
    transition = STAGE_FLOW.get(current_stage)
    if transition is None:
        raise ValidationError(f"Invalid stage {current_stage} for approval")
    return transition


def ensure_not_terminal(status: CRStatus, action: str) -> None:
    """Block workflow actions on Completed, Rejected or Deleted CRs."""
    if status in TERMINAL_STATUSES:
        logger.warning(f"Blocked {action} on terminal CR (status={status.value})")
        raise ValidationError(
            f"Cannot {action}: change request is {status.value}. "
            f"{status.value} change requests are immutable."
        )


def resolve_approver_role(
    stage: int,
    actor: Actor,
    requested_by: int,
) -> Role:
    """
    Validate that the actor may approve/reject at `stage`.

    Args:
        stage: CR's current stage
        actor: Acting user with resolved roles
        requested_by: User id of the CR's original requestor

    Returns:
        The role under which the action is recorded

    Raises:
        ValidationError: If the stage has no approver
        PermissionDeniedError: If the actor lacks the stage's role
    """
    required_role = STAGE_APPROVER_ROLES.get(stage)
    if required_role is None:
        raise ValidationError(f"Invalid stage {stage} for approval")

    if stage == REQUESTOR_CONFIRMATION_STAGE:
        if actor.user_id != requested_by:
            logger.warning(
                f"Blocked stage {stage} confirmation by user {actor.user_id} (requestor is {requested_by})"
            )
            raise PermissionDeniedError(
                "Only the original requestor can confirm test results",
                required_role=required_role.value,
                current_roles=actor.role_names,
            )
        return required_role

    if not actor.has_role(required_role):
        logger.warning(
            f"Blocked stage {stage} action by user {actor.user_id} with roles {actor.role_names}"
        )
        raise PermissionDeniedError(
            f"Only {required_role.value} can approve or reject at stage {stage}",
            required_role=required_role.value,
            current_roles=actor.role_names,
        )

    logger.debug(f"User {actor.user_id} acting as {required_role.value} at stage {stage}")
    return required_role


def is_approver_for_stage(stage: int, actor: Actor, requested_by: int) -> bool:
    """Non-raising variant of resolve_approver_role."""
    try:
        resolve_approver_role(stage, actor, requested_by)
    except (PermissionDeniedError, ValidationError):
        return False
    return True
