"""SQLAlchemy database models."""
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    Numeric,
    DateTime,
    ForeignKey,
    Enum,
    CheckConstraint,
    Boolean,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import relationship, declarative_base

# Base class for all models
Base = declarative_base()


class Role(str, enum.Enum):
    """Role tags supplied by the identity provider.

    Every actor implicitly holds REQUESTOR in addition to any granted role.
    """

    REQUESTOR = "requestor"
    LINE_MANAGER = "line_manager"
    HEAD_OF_IT = "head_of_it"
    IT_OFFICER = "it_officer"
    QA_OFFICER = "qa_officer"
    HEAD_OF_INFOSEC = "head_of_infosec"
    NOC = "noc"


class BusinessPriority(str, enum.Enum):
    """Business priority of a change request."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class DowntimeUnit(str, enum.Enum):
    """Unit for the expected downtime estimate."""

    MINUTES = "Minutes"
    HOURS = "Hours"
    DAYS = "Days"


class CRStatus(str, enum.Enum):
    """Workflow status of a change request.

    One in-flight status per stage, plus three terminal statuses.
    """

    DRAFT = "Draft"
    PENDING_LM_APPROVAL = "Pending LM Approval"
    PENDING_HOIT_APPROVAL = "Pending HoIT Approval"
    ASSIGNED_TO_IT_OFFICER = "Assigned to IT Officer"
    REQUESTOR_TEST_CONFIRMATION = "Requestor Test Confirmation Required"
    PENDING_QA_VALIDATION = "Pending QA Validation"
    PENDING_PRODUCTION_APPROVAL = "Pending Production Approval"
    PENDING_FINAL_APPROVAL = "Pending Final Approval"
    READY_TO_DEPLOY = "Ready to Deploy"
    WAITING_FOR_CLOSURE = "Waiting for Closure"

    # Terminal statuses
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    DELETED = "Deleted"


class ApprovalOutcome(str, enum.Enum):
    """Outcome of an approve/reject action."""

    APPROVED = "approved"
    REJECTED = "rejected"


class HistoryAction(str, enum.Enum):
    """Action kinds recorded in the CR audit trail."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    APPROVED = "approved"
    REJECTED = "rejected"
    ITO_FIELDS_UPDATED = "ito_fields_updated"
    TESTING_RESULTS_ADDED = "testing_results_added"
    QA_CHECKLIST_ADDED = "qa_checklist_added"
    CLOSED = "closed"


class AttachmentType(str, enum.Enum):
    """Kinds of files attached to a change request."""

    SIGNATURE = "SIGNATURE"
    UAT_DOCUMENTATION = "UAT_DOCUMENTATION"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class CRSequence(Base):
    """
    Tracks next available number for CR business ids per calendar year.

    Rows are locked while incremented so that concurrent creations never
    hand out the same CR-<year>-<seq> value.
    """

    __tablename__ = "cr_sequences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    year = Column(Integer, nullable=False, unique=True)
    next_number = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("next_number > 0", name="chk_cr_next_number_positive"),
    )

    def __repr__(self) -> str:
        return f"<CRSequence {self.year} next={self.next_number}>"


class ChangeRequest(Base):
    """
    Change Request aggregate root.

    Moves through a 10-stage approval workflow. Stage 1 (drafting) is folded
    into creation, so new CRs start at stage 2 awaiting line manager approval.
    """

    __tablename__ = "change_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_number = Column(String(20), nullable=False, unique=True, index=True)  # e.g., CR-2025-0042

    # Stage 1: Requestor section
    requested_by = Column(Integer, nullable=False, index=True)
    request_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    purpose_of_change = Column(Text, nullable=False)
    description_of_change = Column(Text, nullable=False)
    line_manager_id = Column(Integer, nullable=False, index=True)
    business_priority = Column(
        Enum(BusinessPriority, values_callable=_enum_values, name="businesspriority"),
        nullable=False,
        index=True,
    )
    priority_justification = Column(Text, nullable=True)
    requestor_signature = Column(Text, nullable=True)

    # Workflow state
    current_stage = Column(Integer, nullable=False, default=2, index=True)
    current_status = Column(
        Enum(CRStatus, values_callable=_enum_values, name="crstatus"),
        nullable=False,
        default=CRStatus.PENDING_LM_APPROVAL,
        index=True,
    )

    # Stage 3: IT officer assignment
    assigned_to_it_officer_id = Column(Integer, nullable=True, index=True)

    # Stage 4: IT officer assessment
    category = Column(String(50), nullable=True)
    subcategory = Column(String(50), nullable=True)
    impacts_client_service = Column(Boolean, nullable=True)
    impact_assessment = Column(Text, nullable=True)
    backout_rollback_plan = Column(Text, nullable=True)
    expected_downtime_value = Column(Numeric(10, 2), nullable=True)
    expected_downtime_unit = Column(
        Enum(DowntimeUnit, values_callable=_enum_values, name="downtimeunit"),
        nullable=True,
    )
    cost_involved = Column(Numeric(12, 2), nullable=True)
    planned_datetime = Column(DateTime, nullable=True)
    last_backup_date = Column(DateTime, nullable=True)
    ito_signature = Column(Text, nullable=True)

    # Stage 10: NOC closure
    noc_closure_notes = Column(Text, nullable=True)
    incident_triggered = Column(Boolean, nullable=True)
    incident_details = Column(Text, nullable=True)
    rollback_triggered = Column(Boolean, nullable=True)
    rollback_details = Column(Text, nullable=True)
    noc_closure_justification = Column(Text, nullable=True)
    noc_signature = Column(Text, nullable=True)

    # Audit fields
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    deployment_completed_at = Column(DateTime, nullable=True)

    # Optimistic concurrency: UPDATEs are conditioned on the loaded version
    version_id = Column(Integer, nullable=False)

    # Child collections
    approvals = relationship(
        "CRApproval", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRApproval.id",
    )
    testing_results = relationship(
        "CRTestingResult", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRTestingResult.id",
    )
    qa_checklists = relationship(
        "CRQAChecklist", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRQAChecklist.id",
    )
    deployment_team = relationship(
        "CRDeploymentTeam", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRDeploymentTeam.id",
    )
    attachments = relationship(
        "CRAttachment", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRAttachment.id",
    )
    history = relationship(
        "CRHistory", back_populates="change_request",
        cascade="all, delete-orphan", order_by="CRHistory.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint("current_stage BETWEEN 1 AND 10", name="chk_cr_stage_range"),
    )

    @property
    def is_terminal(self) -> bool:
        """True once the CR is Completed, Rejected or Deleted."""
        return self.current_status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<ChangeRequest {self.cr_number}: stage {self.current_stage} ({self.current_status.value})>"


TERMINAL_STATUSES = frozenset({CRStatus.COMPLETED, CRStatus.REJECTED, CRStatus.DELETED})


class CRApproval(Base):
    """One approve/reject action recorded against a CR at its current stage."""

    __tablename__ = "cr_approvals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(Integer, nullable=False)
    approver_id = Column(Integer, nullable=False, index=True)
    approver_role = Column(Enum(Role, values_callable=_enum_values, name="crrole"), nullable=False)
    status = Column(Enum(ApprovalOutcome, values_callable=_enum_values, name="approvaloutcome"), nullable=False)
    signature_file_path = Column(Text, nullable=True)
    comments = Column(Text, nullable=True)
    risk_accepted = Column(Boolean, nullable=True)
    approved_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    change_request = relationship("ChangeRequest", back_populates="approvals")

    def __repr__(self) -> str:
        return f"<CRApproval cr={self.cr_id} stage={self.stage} {self.status.value}>"


class CRHistory(Base):
    """Append-only audit trail entry for a CR mutation."""

    __tablename__ = "cr_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    changed_by = Column(Integer, nullable=False, index=True)
    action = Column(Enum(HistoryAction, values_callable=_enum_values, name="historyaction"), nullable=False)
    from_stage = Column(Integer, nullable=True)
    to_stage = Column(Integer, nullable=True)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    additional_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    change_request = relationship("ChangeRequest", back_populates="history")

    def __repr__(self) -> str:
        return f"<CRHistory cr={self.cr_id}: {self.action.value} {self.from_stage}->{self.to_stage}>"


class CRTestingResult(Base):
    """Testing results recorded against a CR."""

    __tablename__ = "cr_testing_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    test_type = Column(String(100), nullable=False)
    tested_by = Column(Integer, nullable=False)
    test_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    # Structure: [{test_case, expected_result, actual_result, passed, remarks}]
    test_results = Column(JSON, nullable=False, default=list)
    passed = Column(Boolean, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    change_request = relationship("ChangeRequest", back_populates="testing_results")


class CRQAChecklist(Base):
    """QA validation checklist (stage 6)."""

    __tablename__ = "cr_qa_checklists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    qa_officer_id = Column(Integer, nullable=False)
    # Structure: [{check_item, checked, remarks}]
    checklist_data = Column(JSON, nullable=False, default=list)
    validated = Column(Boolean, nullable=False, default=False)
    validation_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    change_request = relationship("ChangeRequest", back_populates="qa_checklists")


class CRDeploymentTeam(Base):
    """Member of the team executing the production deployment."""

    __tablename__ = "cr_deployment_team"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    member_name = Column(String(255), nullable=False)
    designation = Column(String(255), nullable=True)
    contact = Column(String(255), nullable=True)
    role = Column(String(50), nullable=False, default="member")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    change_request = relationship("ChangeRequest", back_populates="deployment_team")


class CRAttachment(Base):
    """File attached to a CR via the blob store."""

    __tablename__ = "cr_attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cr_id = Column(Integer, ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    file_size = Column(Integer, nullable=True)
    file_type = Column(Enum(AttachmentType, values_callable=_enum_values, name="attachmenttype"), nullable=False)
    uploaded_by = Column(Integer, nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    change_request = relationship("ChangeRequest", back_populates="attachments")

    __table_args__ = (
        UniqueConstraint("file_path", name="uq_cr_attachment_path"),
    )
