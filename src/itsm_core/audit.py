"""Append-only audit trail for change requests."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("itsm-core.audit")


def record_history(
    db: Session,
    cr: models.ChangeRequest,
    changed_by: int,
    action: models.HistoryAction,
    from_stage: Optional[int] = None,
    to_stage: Optional[int] = None,
    from_status: Optional[models.CRStatus] = None,
    to_status: Optional[models.CRStatus] = None,
    notes: Optional[str] = None,
    additional_data: Optional[dict] = None,
) -> models.CRHistory:
    """
    Append a history entry for a CR mutation.

    The entry joins the caller's unit of work and is written by the caller's
    commit, so it rolls back together with the change it describes.

    Args:
        db: Database session
        cr: Change request being changed
        changed_by: Acting user id
        action: Kind of mutation
        from_stage: Stage before the change
        to_stage: Stage after the change
        from_status: Status before the change
        to_status: Status after the change
        notes: Human-readable description
        additional_data: Structured details (JSON)

    Returns:
        The pending history entry
    """
    entry = models.CRHistory(
        change_request=cr,
        changed_by=changed_by,
        action=action,
        from_stage=from_stage,
        to_stage=to_stage,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        notes=notes,
        additional_data=additional_data,
    )
    db.add(entry)
    logger.debug(f"History {action.value} queued for {cr.cr_number} ({from_stage}->{to_stage})")
    return entry


def get_history(db: Session, cr_id: int, limit: int = 100) -> list[models.CRHistory]:
    """
    Get the audit trail for a CR, newest first.

    Args:
        db: Database session
        cr_id: Change request id
        limit: Maximum number of entries

    Returns:
        List of history entries
    """
    return (
        db.query(models.CRHistory)
        .filter(models.CRHistory.cr_id == cr_id)
        .order_by(models.CRHistory.created_at.desc(), models.CRHistory.id.desc())
        .limit(limit)
        .all()
    )
