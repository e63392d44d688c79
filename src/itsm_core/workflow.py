"""Change request workflow engine.

Every operation runs as one unit of work on the given session: load the CR,
check rules in a fixed order, mutate, append history, commit. Notifications
are dispatched only after the commit succeeded.

The CR row is version-counted; if another writer committed between our load
and our commit, the flush fails, the whole unit (approval and history rows
included) is rolled back and ConflictError is raised.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import crud, models, schemas
from .audit import record_history
from .blob_store import BlobStore
from .categories import validate_category_subcategory
from .closure import ensure_awaiting_closure, validate_closure
from .errors import ConflictError, PermissionDeniedError, ValidationError
from .models import (
    ApprovalOutcome,
    AttachmentType,
    BusinessPriority,
    CRStatus,
    HistoryAction,
    Role,
)
from .notifications import (
    Explicit,
    NotificationDispatcher,
    NotificationKind,
    send_notification,
    stage_notification,
)
from .permissions import check_edit_or_delete_permission
from .roles import Actor
from .state_machine import (
    CLOSURE_STAGE,
    FIRST_STAGE,
    ensure_not_terminal,
    get_next_stage,
    resolve_approver_role,
)

logger = logging.getLogger("itsm-core.workflow")

ITO_ASSESSMENT_STAGE = 4
QA_VALIDATION_STAGE = 6
IT_OFFICER_ASSIGNMENT_STAGE = 3
PRODUCTION_APPROVAL_STAGE = 7
DEPLOYMENT_STAGE = 9

EDITABLE_FIELDS = (
    "purpose_of_change",
    "description_of_change",
    "business_priority",
    "priority_justification",
    "line_manager_id",
)

# Columns a requestor may change but never clear
REQUIRED_FIELDS = (
    "purpose_of_change",
    "description_of_change",
    "business_priority",
    "line_manager_id",
)


def _commit(db: Session, cr: models.ChangeRequest) -> None:
    """Commit the unit of work, translating lost updates into ConflictError."""
    cr_id, cr_number = cr.id, cr.cr_number
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning(f"Concurrent modification detected on {cr_number}; changes rolled back")
        raise ConflictError(
            f"Change request {cr_number} was modified by another user. Reload and try again.",
            cr_id=cr_id,
        )
    db.refresh(cr)


def _check_priority_justification(priority: BusinessPriority, justification: Optional[str]) -> None:
    if priority == BusinessPriority.HIGH and (justification is None or not justification.strip()):
        raise ValidationError("Priority justification is required for High priority change requests")


# ============================================================================
# Creation and stage transitions
# ============================================================================

def create_change_request(
    db: Session,
    payload: schemas.ChangeRequestCreate,
    actor: Actor,
    notifier: Optional[NotificationDispatcher] = None,
) -> models.ChangeRequest:
    """
    Raise a new change request.

    Stage 1 (drafting) is folded into creation: the CR is stored at stage 2
    awaiting line manager approval, and the line manager is notified.

    Args:
        db: Database session
        payload: Requestor section
        actor: Requesting user
        notifier: Notification dispatcher (optional)

    Returns:
        Created change request

    Raises:
        ValidationError: High priority without justification
        ConflictError: CR number collision with a concurrent creation
    """
    _check_priority_justification(payload.business_priority, payload.priority_justification)

    # Sequence allocation flushes, so a first-of-year race surfaces here too
    try:
        cr = models.ChangeRequest(
            cr_number=crud.next_cr_number(db),
            requested_by=actor.user_id,
            request_date=datetime.utcnow(),
            purpose_of_change=payload.purpose_of_change,
            description_of_change=payload.description_of_change,
            line_manager_id=payload.line_manager_id,
            business_priority=payload.business_priority,
            priority_justification=payload.priority_justification,
            requestor_signature=payload.requestor_signature,
            current_stage=FIRST_STAGE,
            current_status=CRStatus.PENDING_LM_APPROVAL,
        )
        db.add(cr)
        record_history(
            db, cr, actor.user_id, HistoryAction.CREATED,
            from_stage=1, to_stage=FIRST_STAGE,
            from_status=CRStatus.DRAFT, to_status=CRStatus.PENDING_LM_APPROVAL,
            notes="Change request created",
        )
        _commit(db, cr)
    except IntegrityError:
        db.rollback()
        logger.warning(f"CR number collision while creating a change request for user {actor.user_id}")
        raise ConflictError("Could not allocate a unique CR number. Please retry.")

    logger.info(f"Created {cr.cr_number} (priority={cr.business_priority.value}) for user {actor.user_id}")
    send_notification(notifier, cr, NotificationKind.CR_CREATED, Explicit.of(cr.line_manager_id))
    return cr


def approve_change_request(
    db: Session,
    cr_id: int,
    payload: schemas.ChangeRequestApprove,
    actor: Actor,
    notifier: Optional[NotificationDispatcher] = None,
) -> models.ChangeRequest:
    """
    Approve a CR at its current stage and advance it exactly one stage.

    Checks run in order: existence, terminal status, stage 10 (closure
    only), role for stage, then stage-specific payload rules (stage 3 must
    assign an IT officer, stage 7 must accept risk).

    Args:
        db: Database session
        cr_id: Change request id
        payload: Approval details
        actor: Approving user
        notifier: Notification dispatcher (optional)

    Returns:
        Updated change request

    Raises:
        NotFoundError: CR does not exist
        ValidationError: Terminal CR, stage 10, or missing stage-specific data
        PermissionDeniedError: Actor may not act at this stage
        ConflictError: CR changed concurrently
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "approve")
    transition = get_next_stage(cr.current_stage)
    approver_role = resolve_approver_role(cr.current_stage, actor, cr.requested_by)

    old_stage = cr.current_stage
    old_status = cr.current_status

    if old_stage == IT_OFFICER_ASSIGNMENT_STAGE and not payload.assigned_to_it_officer_id:
        raise ValidationError("IT Officer must be assigned at this stage")
    if old_stage == PRODUCTION_APPROVAL_STAGE and payload.risk_accepted is not True:
        raise ValidationError("Risk must be accepted for production approval")

    db.add(models.CRApproval(
        change_request=cr,
        stage=old_stage,
        approver_id=actor.user_id,
        approver_role=approver_role,
        status=ApprovalOutcome.APPROVED,
        signature_file_path=payload.signature_file_path,
        comments=payload.comments,
        risk_accepted=payload.risk_accepted,
        approved_at=datetime.utcnow(),
    ))

    if old_stage == IT_OFFICER_ASSIGNMENT_STAGE:
        cr.assigned_to_it_officer_id = payload.assigned_to_it_officer_id
    if old_stage == DEPLOYMENT_STAGE:
        cr.deployment_completed_at = datetime.utcnow()

    cr.current_stage = transition.next_stage
    cr.current_status = transition.next_status

    record_history(
        db, cr, actor.user_id, HistoryAction.APPROVED,
        from_stage=old_stage, to_stage=transition.next_stage,
        from_status=old_status, to_status=transition.next_status,
        notes=payload.comments or "Approved",
    )
    _commit(db, cr)

    logger.info(
        f"{cr.cr_number} approved by user {actor.user_id} as {approver_role.value}: "
        f"stage {old_stage} -> {cr.current_stage} ({cr.current_status.value})"
    )

    notification = stage_notification(cr)
    if notification is not None:
        kind, recipients = notification
        send_notification(notifier, cr, kind, recipients)
    return cr


def reject_change_request(
    db: Session,
    cr_id: int,
    payload: schemas.ChangeRequestReject,
    actor: Actor,
    notifier: Optional[NotificationDispatcher] = None,
) -> models.ChangeRequest:
    """
    Reject a CR at its current stage.

    The stage is kept; the status becomes Rejected (terminal). The requestor,
    line manager and any assigned IT officer are notified.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: Terminal CR or blank reason
        PermissionDeniedError: Actor may not act at this stage
        ConflictError: CR changed concurrently
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "reject")
    approver_role = resolve_approver_role(cr.current_stage, actor, cr.requested_by)

    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")

    old_status = cr.current_status
    db.add(models.CRApproval(
        change_request=cr,
        stage=cr.current_stage,
        approver_id=actor.user_id,
        approver_role=approver_role,
        status=ApprovalOutcome.REJECTED,
        signature_file_path=payload.signature_file_path,
        comments=reason,
        approved_at=datetime.utcnow(),
    ))
    cr.current_status = CRStatus.REJECTED

    record_history(
        db, cr, actor.user_id, HistoryAction.REJECTED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=old_status, to_status=CRStatus.REJECTED,
        notes=reason,
        additional_data={"comments": payload.comments} if payload.comments else None,
    )
    _commit(db, cr)

    logger.info(f"{cr.cr_number} rejected at stage {cr.current_stage} by user {actor.user_id}")
    send_notification(
        notifier, cr, NotificationKind.CR_REJECTED,
        Explicit.of(cr.requested_by, cr.line_manager_id, cr.assigned_to_it_officer_id),
    )
    return cr


# ============================================================================
# Edit / delete (baton pass)
# ============================================================================

def update_change_request(
    db: Session,
    cr_id: int,
    payload: schemas.ChangeRequestUpdate,
    actor: Actor,
) -> models.ChangeRequest:
    """
    Edit the requestor section of a CR.

    Only whitelisted fields change; stage and status are untouched. The High
    priority justification rule is re-checked against the resulting values.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is Completed, Rejected or Deleted, a required
            field is cleared, or the resulting priority lacks a justification
        PermissionDeniedError: Actor does not hold the edit baton
        ConflictError: CR changed concurrently
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "update")
    check_edit_or_delete_permission(cr, actor)

    update_data = payload.model_dump(exclude_unset=True)
    cleared = sorted(field for field in REQUIRED_FIELDS if field in update_data and update_data[field] is None)
    if cleared:
        raise ValidationError(f"Required fields cannot be cleared: {', '.join(cleared)}")

    changes = {
        field: value
        for field, value in update_data.items()
        if field in EDITABLE_FIELDS and getattr(cr, field) != value
    }

    priority = changes.get("business_priority", cr.business_priority)
    justification = changes.get("priority_justification", cr.priority_justification)
    _check_priority_justification(priority, justification)

    if not changes:
        logger.debug(f"No changes to apply to {cr.cr_number}")
        return cr

    for field, value in changes.items():
        setattr(cr, field, value)

    record_history(
        db, cr, actor.user_id, HistoryAction.UPDATED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes=f"Updated fields: {', '.join(sorted(changes))}",
        additional_data={"fields": sorted(changes)},
    )
    _commit(db, cr)

    logger.info(f"{cr.cr_number} updated by user {actor.user_id}: {sorted(changes)}")
    return cr


def remove_change_request(db: Session, cr_id: int, actor: Actor) -> models.ChangeRequest:
    """
    Soft-delete a CR (status becomes Deleted; the row is kept).

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is Completed or already Deleted
        PermissionDeniedError: Actor does not hold the delete baton
        ConflictError: CR changed concurrently
    """
    cr = crud.get_change_request(db, cr_id)
    if cr.current_status == CRStatus.COMPLETED:
        raise ValidationError("Cannot delete a completed change request")
    if cr.current_status == CRStatus.DELETED:
        raise ValidationError(f"Change request {cr.cr_number} is already deleted")
    check_edit_or_delete_permission(cr, actor)

    old_status = cr.current_status
    cr.current_status = CRStatus.DELETED
    record_history(
        db, cr, actor.user_id, HistoryAction.DELETED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=old_status, to_status=CRStatus.DELETED,
        notes="Change request deleted",
    )
    _commit(db, cr)

    logger.info(f"{cr.cr_number} deleted by user {actor.user_id} at stage {cr.current_stage}")
    return cr


# ============================================================================
# Stage 4: IT officer assessment
# ============================================================================

def update_it_officer_fields(
    db: Session,
    cr_id: int,
    payload: schemas.ITOfficerFieldsUpdate,
    actor: Actor,
) -> models.ChangeRequest:
    """
    Record the assigned IT officer's technical assessment.

    Does not advance the stage; the IT officer approves separately.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is not at stage 4, or invalid category pair
        PermissionDeniedError: Actor is not the assigned IT officer
        ConflictError: CR changed concurrently
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "update IT officer fields")
    if cr.current_stage != ITO_ASSESSMENT_STAGE:
        raise ValidationError(
            f"CR is not at IT Officer assessment stage (current stage {cr.current_stage})"
        )
    if cr.assigned_to_it_officer_id != actor.user_id:
        logger.warning(f"User {actor.user_id} is not the assigned IT officer for {cr.cr_number}")
        raise PermissionDeniedError(
            "Only the assigned IT Officer can update these fields",
            required_role=Role.IT_OFFICER.value,
            current_roles=actor.role_names,
        )

    validate_category_subcategory(payload.category, payload.subcategory)

    cr.category = payload.category
    cr.subcategory = payload.subcategory
    cr.impacts_client_service = payload.impacts_client_service
    cr.impact_assessment = payload.impact_assessment
    cr.backout_rollback_plan = payload.backout_rollback_plan
    cr.expected_downtime_value = payload.expected_downtime_value
    cr.expected_downtime_unit = payload.expected_downtime_unit
    cr.cost_involved = payload.cost_involved or 0
    cr.planned_datetime = payload.planned_datetime
    cr.last_backup_date = payload.last_backup_date
    if payload.ito_signature:
        cr.ito_signature = payload.ito_signature

    record_history(
        db, cr, actor.user_id, HistoryAction.ITO_FIELDS_UPDATED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes="IT Officer assessment fields updated",
        additional_data={"category": cr.category, "subcategory": cr.subcategory},
    )
    _commit(db, cr)

    logger.info(f"{cr.cr_number} assessment recorded by IT officer {actor.user_id} ({cr.category}/{cr.subcategory})")
    return cr


# ============================================================================
# Satellite records
# ============================================================================

def add_testing_results(
    db: Session,
    cr_id: int,
    payload: schemas.TestingResultsCreate,
    actor: Actor,
) -> models.CRTestingResult:
    """
    Record a round of testing against a CR.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is terminal
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "add testing results")

    result = models.CRTestingResult(
        change_request=cr,
        test_type=payload.test_type,
        tested_by=actor.user_id,
        test_date=datetime.utcnow(),
        test_results=[item.model_dump() for item in payload.test_results],
        passed=payload.passed,
        notes=payload.notes,
    )
    db.add(result)

    outcome = "PASSED" if payload.passed else "FAILED"
    record_history(
        db, cr, actor.user_id, HistoryAction.TESTING_RESULTS_ADDED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes=f"Testing results added: {payload.test_type} - {outcome}",
    )
    _commit(db, cr)
    db.refresh(result)

    logger.info(f"{cr.cr_number}: {payload.test_type} testing {outcome} recorded by user {actor.user_id}")
    return result


def _ensure_qa_stage(cr: models.ChangeRequest, actor: Actor, action: str) -> None:
    ensure_not_terminal(cr.current_status, action)
    if cr.current_stage != QA_VALIDATION_STAGE:
        raise ValidationError(f"CR is not at QA validation stage (current stage {cr.current_stage})")
    if not actor.has_role(Role.QA_OFFICER):
        logger.warning(f"User {actor.user_id} without qa_officer role tried to {action} on {cr.cr_number}")
        raise PermissionDeniedError(
            "Only a QA officer can manage the QA checklist",
            required_role=Role.QA_OFFICER.value,
            current_roles=actor.role_names,
        )


def add_qa_checklist(
    db: Session,
    cr_id: int,
    payload: schemas.QAChecklistCreate,
    actor: Actor,
) -> models.CRQAChecklist:
    """
    Record the stage 6 QA checklist.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is terminal or not at stage 6
        PermissionDeniedError: Actor is not a QA officer
    """
    cr = crud.get_change_request(db, cr_id)
    _ensure_qa_stage(cr, actor, "add QA checklist")

    checklist = models.CRQAChecklist(
        change_request=cr,
        qa_officer_id=actor.user_id,
        checklist_data=[item.model_dump() for item in payload.checklist_data],
        validated=payload.validated,
        validation_date=datetime.utcnow() if payload.validated else None,
        notes=payload.notes,
    )
    db.add(checklist)

    record_history(
        db, cr, actor.user_id, HistoryAction.QA_CHECKLIST_ADDED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes=f"QA checklist added ({'validated' if payload.validated else 'not validated'})",
    )
    _commit(db, cr)
    db.refresh(checklist)

    logger.info(f"{cr.cr_number}: QA checklist recorded by user {actor.user_id}")
    return checklist


def validate_qa_checklist(
    db: Session,
    cr_id: int,
    checklist_id: int,
    actor: Actor,
) -> models.CRQAChecklist:
    """
    Mark a previously recorded QA checklist as validated.

    Raises:
        NotFoundError: CR or checklist does not exist
        ValidationError: CR not at stage 6, or checklist already validated
        PermissionDeniedError: Actor is not a QA officer
    """
    cr = crud.get_change_request(db, cr_id)
    _ensure_qa_stage(cr, actor, "validate QA checklist")
    checklist = crud.get_qa_checklist(db, cr_id, checklist_id)

    if checklist.validated:
        raise ValidationError(f"QA checklist {checklist_id} is already validated")

    checklist.validated = True
    checklist.validation_date = datetime.utcnow()

    record_history(
        db, cr, actor.user_id, HistoryAction.UPDATED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes=f"QA checklist {checklist_id} validated",
    )
    _commit(db, cr)
    db.refresh(checklist)

    logger.info(f"{cr.cr_number}: QA checklist {checklist_id} validated by user {actor.user_id}")
    return checklist


def add_deployment_team_member(
    db: Session,
    cr_id: int,
    payload: schemas.DeploymentTeamMemberCreate,
    actor: Actor,
) -> models.CRDeploymentTeam:
    """
    Add a member to the CR's deployment team.

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is terminal
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "add deployment team member")

    member = models.CRDeploymentTeam(
        change_request=cr,
        member_name=payload.member_name,
        designation=payload.designation,
        contact=payload.contact,
        role=payload.role or "member",
    )
    db.add(member)

    record_history(
        db, cr, actor.user_id, HistoryAction.UPDATED,
        from_stage=cr.current_stage, to_stage=cr.current_stage,
        from_status=cr.current_status, to_status=cr.current_status,
        notes=f"Deployment team member added: {payload.member_name}",
    )
    _commit(db, cr)
    db.refresh(member)

    logger.info(f"{cr.cr_number}: deployment team member {payload.member_name!r} added by user {actor.user_id}")
    return member


def add_attachment(
    db: Session,
    cr_id: int,
    actor: Actor,
    data: bytes,
    filename: str,
    mime_type: str,
    kind: AttachmentType,
    blob_store: BlobStore,
) -> models.CRAttachment:
    """
    Store an uploaded file and attach it to a CR.

    Args:
        db: Database session
        cr_id: Change request id
        actor: Uploading user
        data: File content
        filename: Original file name (extension is kept)
        mime_type: Declared content type
        kind: Signature or UAT documentation
        blob_store: Storage backend

    Returns:
        The attachment record (its file_path is the stored location)

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR is terminal, or type/size not allowed for `kind`
    """
    cr = crud.get_change_request(db, cr_id)
    ensure_not_terminal(cr.current_status, "attach files")
    blob_store.validate(mime_type, len(data), kind)

    file_path = blob_store.save(data, kind, filename)
    attachment = models.CRAttachment(
        change_request=cr,
        file_name=filename,
        file_path=file_path,
        file_size=len(data),
        file_type=kind,
        uploaded_by=actor.user_id,
        uploaded_at=datetime.utcnow(),
    )
    db.add(attachment)

    try:
        _commit(db, cr)
    except Exception:
        blob_store.delete(file_path)
        raise
    db.refresh(attachment)

    logger.info(f"{cr.cr_number}: {kind.value} {filename!r} attached by user {actor.user_id}")
    return attachment


# ============================================================================
# Stage 10: NOC closure
# ============================================================================

def close_change_request(
    db: Session,
    cr_id: int,
    payload: schemas.ChangeRequestClose,
    actor: Actor,
    notifier: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> models.ChangeRequest:
    """
    Close a deployed CR after NOC monitoring.

    Closing within 48 hours of deployment requires a justification.

    Args:
        db: Database session
        cr_id: Change request id
        payload: Closure details
        actor: NOC user
        notifier: Notification dispatcher (optional)
        now: Clock override (defaults to utcnow)

    Returns:
        Completed change request

    Raises:
        NotFoundError: CR does not exist
        ValidationError: CR not waiting for closure, or a closure rule fails
        PermissionDeniedError: Actor lacks the noc role
        ConflictError: CR changed concurrently
    """
    now = now or datetime.utcnow()
    cr = crud.get_change_request(db, cr_id)
    ensure_awaiting_closure(cr)
    approver_role = resolve_approver_role(CLOSURE_STAGE, actor, cr.requested_by)
    elapsed = validate_closure(cr, payload, now)

    old_status = cr.current_status
    cr.noc_closure_notes = payload.noc_closure_notes
    cr.incident_triggered = payload.incident_triggered
    cr.incident_details = payload.incident_details
    cr.rollback_triggered = payload.rollback_triggered
    cr.rollback_details = payload.rollback_details
    cr.noc_closure_justification = payload.noc_closure_justification
    cr.noc_signature = payload.signature_file_path
    cr.current_status = CRStatus.COMPLETED
    cr.completed_at = now

    db.add(models.CRApproval(
        change_request=cr,
        stage=CLOSURE_STAGE,
        approver_id=actor.user_id,
        approver_role=approver_role,
        status=ApprovalOutcome.APPROVED,
        signature_file_path=payload.signature_file_path,
        comments=payload.noc_closure_notes,
        approved_at=now,
    ))

    record_history(
        db, cr, actor.user_id, HistoryAction.CLOSED,
        from_stage=CLOSURE_STAGE, to_stage=CLOSURE_STAGE,
        from_status=old_status, to_status=CRStatus.COMPLETED,
        notes=f"CR closed by NOC. {payload.noc_closure_notes}",
        additional_data={
            "hours_since_deployment": elapsed,
            "incident_triggered": payload.incident_triggered,
            "rollback_triggered": payload.rollback_triggered,
        },
    )
    _commit(db, cr)

    logger.info(f"{cr.cr_number} closed by NOC user {actor.user_id} after {elapsed}h")
    send_notification(
        notifier, cr, NotificationKind.CR_CLOSED,
        Explicit.of(cr.requested_by, cr.line_manager_id, cr.assigned_to_it_officer_id),
    )
    return cr
