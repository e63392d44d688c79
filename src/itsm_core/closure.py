"""NOC closure rules for stage 10.

After deployment NOC monitors the change for 48 hours. Closing earlier is
allowed but must be justified. Incident and rollback flags each require
their detail text.
"""
import logging
from datetime import datetime
from typing import Optional

from . import models, schemas
from .errors import ValidationError
from .models import CRStatus
from .state_machine import CLOSURE_STAGE

logger = logging.getLogger("itsm-core.closure")

CLOSURE_WINDOW_HOURS = 48


def hours_between(start: datetime, end: datetime) -> int:
    """Whole hours elapsed from `start` to `end` (floored)."""
    return int((end - start).total_seconds() // 3600)


def hours_since_deployment(cr: models.ChangeRequest, now: Optional[datetime] = None) -> int:
    """Elapsed whole hours since deployment, falling back to the last update."""
    now = now or datetime.utcnow()
    reference = cr.deployment_completed_at or cr.updated_at
    return hours_between(reference, now)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def ensure_awaiting_closure(cr: models.ChangeRequest) -> None:
    """Raise ValidationError unless the CR sits at stage 10 waiting for closure."""
    if cr.current_stage != CLOSURE_STAGE or cr.current_status != CRStatus.WAITING_FOR_CLOSURE:
        raise ValidationError(
            f"CR is not at NOC closure stage (stage {cr.current_stage}, status {cr.current_status.value})"
        )


def validate_closure(
    cr: models.ChangeRequest,
    closure: schemas.ChangeRequestClose,
    now: Optional[datetime] = None,
) -> int:
    """
    Validate a NOC closure request.

    Args:
        cr: Change request being closed
        closure: Closure payload
        now: Clock override (defaults to utcnow)

    Returns:
        Hours elapsed since deployment

    Raises:
        ValidationError: If any closure rule fails
    """
    ensure_awaiting_closure(cr)

    elapsed = hours_since_deployment(cr, now)
    if elapsed < CLOSURE_WINDOW_HOURS and _is_blank(closure.noc_closure_justification):
        logger.warning(f"Early closure of {cr.cr_number} after {elapsed}h without justification")
        raise ValidationError(
            f"Early closure (< {CLOSURE_WINDOW_HOURS} hours) requires justification. "
            f"Only {elapsed} hours have elapsed since deployment."
        )

    if closure.incident_triggered and _is_blank(closure.incident_details):
        raise ValidationError("Incident details required when incident is triggered")

    if closure.rollback_triggered and _is_blank(closure.rollback_details):
        raise ValidationError("Rollback details required when rollback is triggered")

    return elapsed
