"""Query operations for change requests and their satellite records."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import NotFoundError
from .models import CRStatus, Role, TERMINAL_STATUSES
from .roles import Actor
from .state_machine import PENDING_STATUSES

logger = logging.getLogger("itsm-core.crud")

# Maps staff role → stages whose CRs sit in that role's queue
ROLE_QUEUE_STAGES: dict[Role, tuple[int, ...]] = {
    Role.HEAD_OF_IT: (3, 7),
    Role.QA_OFFICER: (6,),
    Role.HEAD_OF_INFOSEC: (8,),
    Role.NOC: (10,),
}


def _active_only(query):
    return query.filter(models.ChangeRequest.current_status.notin_(list(TERMINAL_STATUSES)))


def _newest_first(query):
    return query.order_by(models.ChangeRequest.created_at.desc(), models.ChangeRequest.id.desc())


def get_change_request(db: Session, cr_id: int) -> models.ChangeRequest:
    """
    Get a change request by id.

    Args:
        db: Database session
        cr_id: Change request id

    Returns:
        ChangeRequest instance

    Raises:
        NotFoundError: If no CR has this id
    """
    cr = db.query(models.ChangeRequest).filter(models.ChangeRequest.id == cr_id).first()
    if cr is None:
        raise NotFoundError(f"Change request {cr_id} not found")
    return cr


def next_cr_number(db: Session, year: Optional[int] = None) -> str:
    """
    Allocate the next CR business id for `year`.

    The per-year sequence row is locked (SELECT ... FOR UPDATE) and
    incremented inside the caller's transaction. The unique constraint on
    `cr_number` is the backstop if two first-of-year inserts race.

    Args:
        db: Database session
        year: Calendar year (defaults to the current UTC year)

    Returns:
        Business id such as CR-2025-0042
    """
    year = year or datetime.utcnow().year
    sequence = (
        db.query(models.CRSequence)
        .filter(models.CRSequence.year == year)
        .with_for_update()
        .first()
    )
    if sequence is None:
        sequence = models.CRSequence(year=year, next_number=1)
        db.add(sequence)
        db.flush()

    number = sequence.next_number
    sequence.next_number = number + 1
    db.flush()
    return f"CR-{year}-{number:04d}"


def list_change_requests(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    include_deleted: bool = False,
) -> list[models.ChangeRequest]:
    """
    List change requests, newest first.

    Args:
        db: Database session
        skip: Number of records to skip
        limit: Maximum number of records to return
        include_deleted: Include soft-deleted CRs (default: excluded)
    """
    query = db.query(models.ChangeRequest)
    if not include_deleted:
        query = query.filter(models.ChangeRequest.current_status != CRStatus.DELETED)
    return _newest_first(query).offset(skip).limit(limit).all()


def find_by_user(db: Session, user_id: int, include_deleted: bool = False) -> list[models.ChangeRequest]:
    """CRs raised by `user_id`, newest first."""
    query = db.query(models.ChangeRequest).filter(models.ChangeRequest.requested_by == user_id)
    if not include_deleted:
        query = query.filter(models.ChangeRequest.current_status != CRStatus.DELETED)
    return _newest_first(query).all()


def find_by_role(db: Session, actor: Actor, view_all: bool = False) -> list[models.ChangeRequest]:
    """
    The actor's work queue, keyed on their primary role.

    - requestor: CRs they raised
    - line_manager: CRs naming them as line manager
    - it_officer: CRs assigned to them
    - head_of_it / qa_officer / head_of_infosec / noc: CRs at their stages

    Staff queues contain active CRs only. `view_all` returns every
    non-deleted CR regardless of role.

    Args:
        db: Database session
        actor: Acting user with resolved roles
        view_all: Skip role filtering

    Returns:
        List of change requests, newest first
    """
    if view_all:
        return list_change_requests(db, limit=None)

    role = actor.primary_role
    query = db.query(models.ChangeRequest)

    if role == Role.REQUESTOR:
        return find_by_user(db, actor.user_id)

    if role == Role.LINE_MANAGER:
        query = query.filter(models.ChangeRequest.line_manager_id == actor.user_id)
    elif role == Role.IT_OFFICER:
        query = query.filter(models.ChangeRequest.assigned_to_it_officer_id == actor.user_id)
    else:
        stages = ROLE_QUEUE_STAGES.get(role)
        if stages is None:
            logger.debug(f"No queue defined for role {role.value}")
            return []
        query = query.filter(models.ChangeRequest.current_stage.in_(stages))

    logger.debug(f"Building {role.value} queue for user {actor.user_id}")
    return _newest_first(_active_only(query)).all()


def search_change_requests(
    db: Session,
    filters: schemas.ChangeRequestSearch,
    include_deleted: bool = False,
) -> list[models.ChangeRequest]:
    """
    Search change requests.

    Args:
        db: Database session
        filters: Status, priority, stage, request date range and free text
            (matched case-insensitively against CR number, purpose and
            description)
        include_deleted: Include soft-deleted CRs unless a status is given

    Returns:
        Matching change requests, newest first
    """
    query = db.query(models.ChangeRequest)

    if filters.status:
        query = query.filter(models.ChangeRequest.current_status == filters.status)
    elif not include_deleted:
        query = query.filter(models.ChangeRequest.current_status != CRStatus.DELETED)

    if filters.priority:
        query = query.filter(models.ChangeRequest.business_priority == filters.priority)

    if filters.stage is not None:
        query = query.filter(models.ChangeRequest.current_stage == filters.stage)

    if filters.date_from:
        query = query.filter(models.ChangeRequest.request_date >= filters.date_from)

    if filters.date_to:
        query = query.filter(models.ChangeRequest.request_date <= filters.date_to)

    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        query = query.filter(
            or_(
                models.ChangeRequest.cr_number.ilike(pattern),
                models.ChangeRequest.purpose_of_change.ilike(pattern),
                models.ChangeRequest.description_of_change.ilike(pattern),
            )
        )

    return _newest_first(query).all()


def get_approvals(db: Session, cr_id: int) -> list[models.CRApproval]:
    """Approval records for a CR, ordered by stage."""
    return (
        db.query(models.CRApproval)
        .filter(models.CRApproval.cr_id == cr_id)
        .order_by(models.CRApproval.stage.asc(), models.CRApproval.id.asc())
        .all()
    )


def get_testing_results(db: Session, cr_id: int) -> list[models.CRTestingResult]:
    return (
        db.query(models.CRTestingResult)
        .filter(models.CRTestingResult.cr_id == cr_id)
        .order_by(models.CRTestingResult.created_at.desc(), models.CRTestingResult.id.desc())
        .all()
    )


def get_qa_checklists(db: Session, cr_id: int) -> list[models.CRQAChecklist]:
    return (
        db.query(models.CRQAChecklist)
        .filter(models.CRQAChecklist.cr_id == cr_id)
        .order_by(models.CRQAChecklist.created_at.desc(), models.CRQAChecklist.id.desc())
        .all()
    )


def get_qa_checklist(db: Session, cr_id: int, checklist_id: int) -> models.CRQAChecklist:
    """
    Get one QA checklist belonging to a CR.

    Raises:
        NotFoundError: If the checklist does not exist on this CR
    """
    checklist = (
        db.query(models.CRQAChecklist)
        .filter(models.CRQAChecklist.id == checklist_id, models.CRQAChecklist.cr_id == cr_id)
        .first()
    )
    if checklist is None:
        raise NotFoundError(
            f"QA checklist {checklist_id} not found on change request {cr_id}",
            resource_type="qa_checklist",
        )
    return checklist


def get_deployment_team(db: Session, cr_id: int) -> list[models.CRDeploymentTeam]:
    return (
        db.query(models.CRDeploymentTeam)
        .filter(models.CRDeploymentTeam.cr_id == cr_id)
        .order_by(models.CRDeploymentTeam.id.asc())
        .all()
    )


def get_attachments(db: Session, cr_id: int) -> list[models.CRAttachment]:
    return (
        db.query(models.CRAttachment)
        .filter(models.CRAttachment.cr_id == cr_id)
        .order_by(models.CRAttachment.uploaded_at.desc(), models.CRAttachment.id.desc())
        .all()
    )


def get_statistics(db: Session) -> schemas.StatisticsResponse:
    """
    Aggregate counts over all change requests.

    `pending` counts every in-flight status. `by_stage` always has keys
    1-10 and `by_priority` always has every priority, zero-filled.
    """
    total = db.query(func.count(models.ChangeRequest.id)).scalar() or 0

    status_counts = dict(
        db.query(models.ChangeRequest.current_status, func.count(models.ChangeRequest.id))
        .group_by(models.ChangeRequest.current_status)
        .all()
    )
    stage_counts = dict(
        db.query(models.ChangeRequest.current_stage, func.count(models.ChangeRequest.id))
        .group_by(models.ChangeRequest.current_stage)
        .all()
    )
    priority_counts = dict(
        db.query(models.ChangeRequest.business_priority, func.count(models.ChangeRequest.id))
        .group_by(models.ChangeRequest.business_priority)
        .all()
    )

    return schemas.StatisticsResponse(
        total=total,
        pending=sum(status_counts.get(status, 0) for status in PENDING_STATUSES),
        completed=status_counts.get(CRStatus.COMPLETED, 0),
        rejected=status_counts.get(CRStatus.REJECTED, 0),
        by_stage={stage: stage_counts.get(stage, 0) for stage in range(1, 11)},
        by_priority={p.value: priority_counts.get(p, 0) for p in models.BusinessPriority},
    )
