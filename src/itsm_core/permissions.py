"""Baton-pass edit/delete permissions for change requests.

Edit/delete authority moves between actors as the CR advances:

- stage 2: the original requestor
- stage 3: the line manager (by role, or by being the CR's line manager)
- stages 4-9: head of IT
- stage 10 and terminal statuses: nobody

These rules are independent of who may approve or reject at a stage.
"""
import logging

from . import models
from .errors import PermissionDeniedError
from .models import Role
from .roles import Actor

logger = logging.getLogger("itsm-core.permissions")

HEAD_OF_IT_BATON_STAGES = range(4, 10)


def check_edit_or_delete_permission(cr: models.ChangeRequest, actor: Actor) -> None:
    """
    Verify that `actor` currently holds the edit/delete baton for `cr`.

    Args:
        cr: Change request to check
        actor: Acting user with resolved roles

    Raises:
        PermissionDeniedError: If the actor does not hold the baton
    """
    stage = cr.current_stage

    if cr.is_terminal or stage >= 10:
        logger.warning(
            f"Edit/delete denied on {cr.cr_number}: stage {stage}, status {cr.current_status.value}"
        )
        raise PermissionDeniedError(
            f"Change request {cr.cr_number} can no longer be edited or deleted "
            f"(stage {stage}, status {cr.current_status.value})",
            current_roles=actor.role_names,
        )

    if stage <= 2:
        if actor.user_id == cr.requested_by:
            return
        raise _denied(cr, actor, Role.REQUESTOR, "Only the original requestor can edit or delete at stage 2")

    if stage == 3:
        if actor.has_role(Role.LINE_MANAGER) or actor.user_id == cr.line_manager_id:
            return
        raise _denied(cr, actor, Role.LINE_MANAGER, "Only the line manager can edit or delete at stage 3")

    if stage in HEAD_OF_IT_BATON_STAGES:
        if actor.has_role(Role.HEAD_OF_IT):
            return
        raise _denied(cr, actor, Role.HEAD_OF_IT, f"Only head_of_it can edit or delete at stage {stage}")


def can_edit_or_delete(cr: models.ChangeRequest, actor: Actor) -> bool:
    """Boolean probe for the baton check; never raises."""
    try:
        check_edit_or_delete_permission(cr, actor)
    except PermissionDeniedError:
        return False
    return True


def _denied(cr: models.ChangeRequest, actor: Actor, required: Role, message: str) -> PermissionDeniedError:
    logger.warning(f"Edit/delete denied on {cr.cr_number} for user {actor.user_id}: {message}")
    return PermissionDeniedError(
        message,
        required_role=required.value,
        current_roles=actor.role_names,
    )
