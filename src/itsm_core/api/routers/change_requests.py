"""API endpoints for the change request approval workflow.

A CR moves through ten stages (requestor, line manager, head of IT, IT
officer, requestor confirmation, QA, production approval, InfoSec,
deployment, NOC closure). Every endpoint acts on behalf of the user named
in the X-User-Id / X-User-Roles headers; the workflow engine decides what
that user may do.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy.orm import Session

from itsm_core import crud, schemas, workflow
from itsm_core.audit import get_history
from itsm_core.blob_store import LocalBlobStore
from itsm_core.categories import CATEGORY_SUBCATEGORIES, get_subcategories
from itsm_core.errors import (
    ChangeRequestError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
)
from itsm_core.models import AttachmentType
from itsm_core.notifications import NotificationDispatcher
from itsm_core.permissions import can_edit_or_delete
from itsm_core.roles import Actor
from itsm_core.state_machine import is_approver_for_stage

from ...database import get_db
from ..dependencies import get_blob_store, get_current_actor, get_notifier

logger = logging.getLogger("itsm-core.change_requests")


def _handle_permission_error(e: PermissionDeniedError) -> HTTPException:
    """Convert PermissionDeniedError to HTTPException with proper 403 response."""
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "permission_denied",
            "message": e.message,
            "required_role": e.required_role,
            "current_roles": e.current_roles,
            "resource_type": e.resource_type,
        }
    )


def _handle_workflow_error(e: ChangeRequestError) -> HTTPException:
    """Convert the remaining workflow errors to 404/409/400 responses."""
    if isinstance(e, PermissionDeniedError):
        return _handle_permission_error(e)
    if isinstance(e, NotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": e.message, "resource_type": e.resource_type},
        )
    if isinstance(e, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "conflict", "message": e.message},
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "validation_error", "message": e.message},
    )


def _load(db: Session, cr_id: int):
    try:
        return crud.get_change_request(db, cr_id)
    except NotFoundError as e:
        raise _handle_workflow_error(e)


router = APIRouter(tags=["change-requests"])


@router.post("/", response_model=schemas.ChangeRequestResponse, status_code=status.HTTP_201_CREATED)
def create_change_request(
    payload: schemas.ChangeRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    """
    Raise a new change request.

    The CR starts at stage 2 (Pending LM Approval) and the named line
    manager is notified. High priority requires a priority justification.
    A signature drawn in the browser may be sent as a ``data:image/...``
    URL; it is stored and replaced by its file path.
    """
    stored_signature = None
    try:
        signature = payload.requestor_signature
        if signature and signature.startswith("data:image/"):
            stored_signature = blob_store.save_base64_signature(signature)
            payload.requestor_signature = stored_signature
        return workflow.create_change_request(db, payload, actor, notifier)
    except ChangeRequestError as e:
        if stored_signature:
            blob_store.delete(stored_signature)
        logger.warning(f"Create rejected for user {actor.user_id}: {e.message}")
        raise _handle_workflow_error(e)


@router.get("/", response_model=list[schemas.ChangeRequestListItem])
def list_change_requests(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    include_deleted: bool = Query(False, description="Include soft-deleted change requests"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """List change requests, newest first."""
    return crud.list_change_requests(db, skip=skip, limit=limit, include_deleted=include_deleted)


@router.get("/search", response_model=list[schemas.ChangeRequestListItem])
def search_change_requests(
    filters: schemas.ChangeRequestSearch = Depends(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Search change requests.

    - **status** / **priority** / **stage**: exact matches
    - **date_from** / **date_to**: request date range (inclusive)
    - **search**: case-insensitive match on CR number, purpose or description
    """
    return crud.search_change_requests(db, filters)


@router.get("/my-requests", response_model=list[schemas.ChangeRequestListItem])
def my_requests(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Change requests raised by the current user."""
    return crud.find_by_user(db, actor.user_id)


@router.get("/by-role", response_model=list[schemas.ChangeRequestListItem])
def change_requests_by_role(
    view_all: bool = Query(False, description="Return every change request instead of the role queue"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Work queue for the current user's primary role."""
    return crud.find_by_role(db, actor, view_all=view_all)


@router.get("/statistics", response_model=schemas.StatisticsResponse)
def statistics(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Counts by status, stage and priority."""
    return crud.get_statistics(db)


@router.get("/categories", response_model=dict[str, list[str]])
def categories(category: Optional[str] = Query(None, description="Restrict to one category")):
    """Category to subcategory matrix used by the stage 4 assessment form."""
    if category is None:
        return {name: list(subs) for name, subs in CATEGORY_SUBCATEGORIES.items()}
    subcategories = get_subcategories(category)
    if not subcategories:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Unknown category: {category}", "resource_type": "category"},
        )
    return {category: subcategories}


@router.get("/{cr_id}", response_model=schemas.ChangeRequestResponse)
def get_change_request(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get a change request with approvals, history and satellite records."""
    return _load(db, cr_id)


@router.patch("/{cr_id}", response_model=schemas.ChangeRequestResponse)
def update_change_request(
    cr_id: int,
    payload: schemas.ChangeRequestUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Edit the requestor section of a change request.

    Only the current baton holder may edit: the requestor at stage 2, the
    line manager at stage 3, head of IT at stages 4-9.
    """
    try:
        return workflow.update_change_request(db, cr_id, payload, actor)
    except ChangeRequestError as e:
        logger.warning(f"Update of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)


@router.delete("/{cr_id}", response_model=schemas.DeleteResponse)
def delete_change_request(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Soft-delete a change request (baton holder only)."""
    try:
        cr = workflow.remove_change_request(db, cr_id, actor)
    except ChangeRequestError as e:
        logger.warning(f"Delete of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)
    return schemas.DeleteResponse(message=f"Change request {cr.cr_number} deleted", id=cr.id)


@router.get("/{cr_id}/can-edit-or-delete", response_model=schemas.PermissionCheckResponse)
def check_permissions(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """What the current user may do with this change request right now."""
    cr = _load(db, cr_id)
    allowed = can_edit_or_delete(cr, actor)
    can_approve = (
        not cr.is_terminal
        and is_approver_for_stage(cr.current_stage, actor, cr.requested_by)
    )
    return schemas.PermissionCheckResponse(can_edit=allowed, can_delete=allowed, can_approve=can_approve)


@router.post("/{cr_id}/approve", response_model=schemas.ChangeRequestResponse)
def approve_change_request(
    cr_id: int,
    payload: schemas.ChangeRequestApprove,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    Approve at the current stage and advance one stage.

    Stage 3 must assign an IT officer; stage 7 must accept the risk.
    Stage 10 is completed through the close endpoint.
    """
    try:
        return workflow.approve_change_request(db, cr_id, payload, actor, notifier)
    except ChangeRequestError as e:
        logger.warning(f"Approval of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)


@router.post("/{cr_id}/reject", response_model=schemas.ChangeRequestResponse)
def reject_change_request(
    cr_id: int,
    payload: schemas.ChangeRequestReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Reject at the current stage. A reason is mandatory."""
    try:
        return workflow.reject_change_request(db, cr_id, payload, actor, notifier)
    except ChangeRequestError as e:
        logger.warning(f"Rejection of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)


@router.patch("/{cr_id}/ito-fields", response_model=schemas.ChangeRequestResponse)
def update_it_officer_fields(
    cr_id: int,
    payload: schemas.ITOfficerFieldsUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Stage 4 technical assessment by the assigned IT officer."""
    try:
        return workflow.update_it_officer_fields(db, cr_id, payload, actor)
    except ChangeRequestError as e:
        logger.warning(f"IT officer update of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)


@router.post(
    "/{cr_id}/testing-results",
    response_model=schemas.TestingResultResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_testing_results(
    cr_id: int,
    payload: schemas.TestingResultsCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Record a round of testing."""
    try:
        return workflow.add_testing_results(db, cr_id, payload, actor)
    except ChangeRequestError as e:
        raise _handle_workflow_error(e)


@router.get("/{cr_id}/testing-results", response_model=list[schemas.TestingResultResponse])
def list_testing_results(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _load(db, cr_id)
    return crud.get_testing_results(db, cr_id)


@router.post(
    "/{cr_id}/qa-checklist",
    response_model=schemas.QAChecklistResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_qa_checklist(
    cr_id: int,
    payload: schemas.QAChecklistCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Record the stage 6 QA checklist (QA officers only)."""
    try:
        return workflow.add_qa_checklist(db, cr_id, payload, actor)
    except ChangeRequestError as e:
        logger.warning(f"QA checklist on CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)


@router.post(
    "/{cr_id}/qa-checklists/{checklist_id}/validate",
    response_model=schemas.QAChecklistResponse,
)
def validate_qa_checklist(
    cr_id: int,
    checklist_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Mark a QA checklist as validated."""
    try:
        return workflow.validate_qa_checklist(db, cr_id, checklist_id, actor)
    except ChangeRequestError as e:
        raise _handle_workflow_error(e)


@router.get("/{cr_id}/qa-checklists", response_model=list[schemas.QAChecklistResponse])
def list_qa_checklists(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _load(db, cr_id)
    return crud.get_qa_checklists(db, cr_id)


@router.post(
    "/{cr_id}/deployment-team",
    response_model=schemas.DeploymentTeamMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_deployment_team_member(
    cr_id: int,
    payload: schemas.DeploymentTeamMemberCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Add a member to the deployment team."""
    try:
        return workflow.add_deployment_team_member(db, cr_id, payload, actor)
    except ChangeRequestError as e:
        raise _handle_workflow_error(e)


@router.get("/{cr_id}/deployment-team", response_model=list[schemas.DeploymentTeamMemberResponse])
def list_deployment_team(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _load(db, cr_id)
    return crud.get_deployment_team(db, cr_id)


def _upload(
    db: Session,
    cr_id: int,
    actor: Actor,
    file: UploadFile,
    kind: AttachmentType,
    blob_store: LocalBlobStore,
) -> schemas.UploadResponse:
    data = file.file.read()
    try:
        attachment = workflow.add_attachment(
            db, cr_id, actor,
            data=data,
            filename=file.filename or "upload",
            mime_type=file.content_type or "application/octet-stream",
            kind=kind,
            blob_store=blob_store,
        )
    except ChangeRequestError as e:
        logger.warning(f"Upload to CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)
    return schemas.UploadResponse(
        file_path=attachment.file_path,
        attachment=schemas.AttachmentResponse.model_validate(attachment),
    )


@router.post(
    "/{cr_id}/upload-signature",
    response_model=schemas.UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
def upload_signature(
    cr_id: int,
    file: UploadFile = File(..., description="JPEG or PNG, at most 2MB"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    """Upload a signature image. The returned path can be used in approvals."""
    return _upload(db, cr_id, actor, file, AttachmentType.SIGNATURE, blob_store)


@router.post(
    "/{cr_id}/upload-document",
    response_model=schemas.UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
def upload_document(
    cr_id: int,
    file: UploadFile = File(..., description="PDF, DOC(X), XLS(X), JPEG, PNG, TXT or ZIP, at most 10MB"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    """Upload UAT documentation."""
    return _upload(db, cr_id, actor, file, AttachmentType.UAT_DOCUMENTATION, blob_store)


@router.get("/{cr_id}/attachments", response_model=list[schemas.AttachmentResponse])
def list_attachments(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _load(db, cr_id)
    return crud.get_attachments(db, cr_id)


@router.get("/{cr_id}/history", response_model=list[schemas.HistoryResponse])
def list_history(
    cr_id: int,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Audit trail, newest first."""
    _load(db, cr_id)
    return get_history(db, cr_id, limit)


@router.get("/{cr_id}/approvals", response_model=list[schemas.ApprovalResponse])
def list_approvals(
    cr_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Approval and rejection records, by stage."""
    _load(db, cr_id)
    return crud.get_approvals(db, cr_id)


@router.post("/{cr_id}/close", response_model=schemas.ChangeRequestResponse)
def close_change_request(
    cr_id: int,
    payload: schemas.ChangeRequestClose,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    NOC closure at stage 10.

    Closing within 48 hours of deployment requires a justification;
    incident and rollback flags require their details.
    """
    try:
        return workflow.close_change_request(db, cr_id, payload, actor, notifier)
    except ChangeRequestError as e:
        logger.warning(f"Closure of CR {cr_id} by user {actor.user_id} rejected: {e.message}")
        raise _handle_workflow_error(e)
