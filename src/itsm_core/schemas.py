"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from .models import (
    Role,
    BusinessPriority,
    DowntimeUnit,
    CRStatus,
    ApprovalOutcome,
    HistoryAction,
    AttachmentType,
)


# Change Request Schemas

class ChangeRequestCreate(BaseModel):
    """Schema for raising a new change request.

    A High priority CR must carry a priority justification; the workflow
    engine enforces this on creation and on every edit.
    """

    purpose_of_change: str = Field(..., min_length=1, max_length=1000)
    description_of_change: str = Field(..., min_length=1, max_length=2000)
    line_manager_id: int = Field(..., gt=0)
    business_priority: BusinessPriority
    priority_justification: Optional[str] = Field(None, max_length=500)
    requestor_signature: Optional[str] = Field(None, description="Signature reference (uploaded path or base64)")


class ChangeRequestUpdate(BaseModel):
    """Schema for editing a change request.

    Only requestor-section fields are editable. Workflow fields (stage,
    status, assignments) are silently ignored if supplied.
    """

    purpose_of_change: Optional[str] = Field(None, min_length=1, max_length=1000)
    description_of_change: Optional[str] = Field(None, min_length=1, max_length=2000)
    business_priority: Optional[BusinessPriority] = None
    priority_justification: Optional[str] = Field(None, max_length=500)
    line_manager_id: Optional[int] = Field(None, gt=0)


class ChangeRequestApprove(BaseModel):
    """Schema for approving a CR at its current stage."""

    signature_file_path: Optional[str] = None
    comments: Optional[str] = Field(None, max_length=1000)
    assigned_to_it_officer_id: Optional[int] = Field(None, gt=0, description="IT officer to assign (stage 3)")
    risk_accepted: Optional[bool] = Field(None, description="Risk acceptance flag (stage 7)")


class ChangeRequestReject(BaseModel):
    """Schema for rejecting a CR at its current stage."""

    reason: str = Field(..., min_length=1, max_length=1000)
    signature_file_path: Optional[str] = None
    comments: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def reason_not_blank(self):
        if not self.reason.strip():
            raise ValueError("Rejection reason must not be blank")
        return self


class ITOfficerFieldsUpdate(BaseModel):
    """Stage 4 technical assessment filled in by the assigned IT officer."""

    category: str = Field(..., min_length=1)
    subcategory: str = Field(..., min_length=1)
    impacts_client_service: bool
    impact_assessment: str = Field(..., min_length=1, max_length=2000)
    backout_rollback_plan: str = Field(..., min_length=1, max_length=2000)
    expected_downtime_value: float = Field(..., ge=0)
    expected_downtime_unit: DowntimeUnit
    cost_involved: Optional[float] = Field(None, ge=0, description="Cost involved in BHD")
    planned_datetime: datetime
    last_backup_date: datetime
    ito_signature: Optional[str] = None


class TestResultItem(BaseModel):
    """Single test case outcome."""

    test_case: str = Field(..., min_length=1)
    expected_result: str = Field(..., min_length=1)
    actual_result: str = Field(..., min_length=1)
    passed: bool
    remarks: Optional[str] = None


class TestingResultsCreate(BaseModel):
    """Schema for recording a round of testing."""

    test_type: str = Field(..., min_length=1, max_length=100)
    test_results: list[TestResultItem]
    passed: bool
    notes: Optional[str] = Field(None, max_length=1000)


class QAChecklistItem(BaseModel):
    """Single QA checklist line."""

    check_item: str = Field(..., min_length=1)
    checked: bool
    remarks: Optional[str] = None


class QAChecklistCreate(BaseModel):
    """Schema for the stage 6 QA validation checklist."""

    checklist_data: list[QAChecklistItem]
    validated: bool
    notes: Optional[str] = Field(None, max_length=1000)


class DeploymentTeamMemberCreate(BaseModel):
    """Schema for adding a deployment team member."""

    member_name: str = Field(..., min_length=1, max_length=255)
    designation: Optional[str] = Field(None, max_length=255)
    contact: Optional[str] = Field(None, max_length=255)
    role: Optional[str] = Field(None, max_length=50)


class ChangeRequestClose(BaseModel):
    """Stage 10 NOC closure."""

    noc_closure_notes: str = Field(..., min_length=1, max_length=2000)
    incident_triggered: bool
    incident_details: Optional[str] = Field(None, max_length=1000)
    rollback_triggered: bool
    rollback_details: Optional[str] = Field(None, max_length=1000)
    noc_closure_justification: Optional[str] = Field(None, max_length=1000, description="Required for closure within 48 hours of deployment")
    signature_file_path: Optional[str] = None


class ChangeRequestSearch(BaseModel):
    """Filters for change request search."""

    status: Optional[CRStatus] = None
    priority: Optional[BusinessPriority] = None
    stage: Optional[int] = Field(None, ge=1, le=10)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = Field(None, description="Matches CR number, purpose or description")


# Satellite record responses

class ApprovalResponse(BaseModel):
    """Schema for CR approval records."""

    id: int
    cr_id: int
    stage: int
    approver_id: int
    approver_role: Role
    status: ApprovalOutcome
    signature_file_path: Optional[str] = None
    comments: Optional[str] = None
    risk_accepted: Optional[bool] = None
    approved_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryResponse(BaseModel):
    """Schema for CR audit trail entries."""

    id: int
    cr_id: int
    changed_by: int
    action: HistoryAction
    from_stage: Optional[int] = None
    to_stage: Optional[int] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    notes: Optional[str] = None
    additional_data: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TestingResultResponse(BaseModel):
    """Schema for testing result records."""

    id: int
    cr_id: int
    test_type: str
    tested_by: int
    test_date: datetime
    test_results: list[TestResultItem]
    passed: Optional[bool] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QAChecklistResponse(BaseModel):
    """Schema for QA checklist records."""

    id: int
    cr_id: int
    qa_officer_id: int
    checklist_data: list[QAChecklistItem]
    validated: bool
    validation_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeploymentTeamMemberResponse(BaseModel):
    """Schema for deployment team members."""

    id: int
    cr_id: int
    member_name: str
    designation: Optional[str] = None
    contact: Optional[str] = None
    role: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AttachmentResponse(BaseModel):
    """Schema for CR attachments."""

    id: int
    cr_id: int
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    file_type: AttachmentType
    uploaded_by: int
    uploaded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UploadResponse(BaseModel):
    """Response for signature/document uploads."""

    file_path: str
    attachment: AttachmentResponse


# Change Request responses

class ChangeRequestListItem(BaseModel):
    """Schema for change request list items (no child collections)."""

    id: int
    cr_number: str
    requested_by: int
    request_date: datetime
    purpose_of_change: str
    line_manager_id: int
    business_priority: BusinessPriority
    current_stage: int
    current_status: CRStatus
    assigned_to_it_officer_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChangeRequestResponse(ChangeRequestListItem):
    """Schema for the full change request aggregate."""

    description_of_change: str
    priority_justification: Optional[str] = None
    requestor_signature: Optional[str] = None

    # Stage 4 assessment
    category: Optional[str] = None
    subcategory: Optional[str] = None
    impacts_client_service: Optional[bool] = None
    impact_assessment: Optional[str] = None
    backout_rollback_plan: Optional[str] = None
    expected_downtime_value: Optional[float] = None
    expected_downtime_unit: Optional[DowntimeUnit] = None
    cost_involved: Optional[float] = None
    planned_datetime: Optional[datetime] = None
    last_backup_date: Optional[datetime] = None
    ito_signature: Optional[str] = None

    # Stage 10 closure
    noc_closure_notes: Optional[str] = None
    incident_triggered: Optional[bool] = None
    incident_details: Optional[str] = None
    rollback_triggered: Optional[bool] = None
    rollback_details: Optional[str] = None
    noc_closure_justification: Optional[str] = None
    noc_signature: Optional[str] = None

    completed_at: Optional[datetime] = None
    deployment_completed_at: Optional[datetime] = None

    approvals: list[ApprovalResponse] = Field(default_factory=list)
    testing_results: list[TestingResultResponse] = Field(default_factory=list)
    qa_checklists: list[QAChecklistResponse] = Field(default_factory=list)
    deployment_team: list[DeploymentTeamMemberResponse] = Field(default_factory=list)
    attachments: list[AttachmentResponse] = Field(default_factory=list)
    history: list[HistoryResponse] = Field(default_factory=list)


class ChangeRequestSnapshot(BaseModel):
    """Detached view of a CR handed to notification dispatchers."""

    id: int
    cr_number: str
    purpose_of_change: str
    business_priority: BusinessPriority
    current_stage: int
    current_status: CRStatus
    requested_by: int
    line_manager_id: int
    assigned_to_it_officer_id: Optional[int] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    impacts_client_service: Optional[bool] = None
    planned_datetime: Optional[datetime] = None
    incident_triggered: Optional[bool] = None
    rollback_triggered: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)


class PermissionCheckResponse(BaseModel):
    """Result of probing what the current actor may do with a CR."""

    can_edit: bool
    can_delete: bool
    can_approve: bool


class DeleteResponse(BaseModel):
    """Response for a soft delete."""

    message: str
    id: int


class StatisticsResponse(BaseModel):
    """Aggregate counts across all change requests."""

    total: int
    pending: int
    completed: int
    rejected: int
    by_stage: dict[int, int]
    by_priority: dict[str, int]
