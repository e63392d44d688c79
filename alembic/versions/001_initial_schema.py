"""Initial schema with change requests, approvals, history and satellite tables.

Revision ID: 001
Revises:
Create Date: 2025-06-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CR_STATUSES = (
    'Draft', 'Pending LM Approval', 'Pending HoIT Approval', 'Assigned to IT Officer',
    'Requestor Test Confirmation Required', 'Pending QA Validation', 'Pending Production Approval',
    'Pending Final Approval', 'Ready to Deploy', 'Waiting for Closure',
    'Completed', 'Rejected', 'Deleted',
)
ROLES = ('requestor', 'line_manager', 'head_of_it', 'it_officer', 'qa_officer', 'head_of_infosec', 'noc')
HISTORY_ACTIONS = (
    'created', 'updated', 'deleted', 'approved', 'rejected',
    'ito_fields_updated', 'testing_results_added', 'qa_checklist_added', 'closed',
)


def upgrade() -> None:
    # Per-year CR number sequence (row-locked on allocation)
    op.create_table(
        'cr_sequences',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('year', sa.Integer, nullable=False, unique=True),
        sa.Column('next_number', sa.Integer, nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('next_number > 0', name='chk_cr_next_number_positive'),
    )

    # Change requests (enums will be created automatically)
    op.create_table(
        'change_requests',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_number', sa.String(20), nullable=False, unique=True),
        sa.Column('requested_by', sa.Integer, nullable=False),
        sa.Column('request_date', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('purpose_of_change', sa.Text, nullable=False),
        sa.Column('description_of_change', sa.Text, nullable=False),
        sa.Column('line_manager_id', sa.Integer, nullable=False),
        sa.Column('business_priority', sa.Enum('Low', 'Medium', 'High', 'Critical', name='businesspriority'), nullable=False),
        sa.Column('priority_justification', sa.Text),
        sa.Column('requestor_signature', sa.Text),
        sa.Column('current_stage', sa.Integer, nullable=False, server_default='2'),
        sa.Column('current_status', sa.Enum(*CR_STATUSES, name='crstatus'), nullable=False, server_default='Pending LM Approval'),
        sa.Column('assigned_to_it_officer_id', sa.Integer),
        sa.Column('category', sa.String(50)),
        sa.Column('subcategory', sa.String(50)),
        sa.Column('impacts_client_service', sa.Boolean),
        sa.Column('impact_assessment', sa.Text),
        sa.Column('backout_rollback_plan', sa.Text),
        sa.Column('expected_downtime_value', sa.Numeric(10, 2)),
        sa.Column('expected_downtime_unit', sa.Enum('Minutes', 'Hours', 'Days', name='downtimeunit')),
        sa.Column('cost_involved', sa.Numeric(12, 2)),
        sa.Column('planned_datetime', sa.DateTime),
        sa.Column('last_backup_date', sa.DateTime),
        sa.Column('ito_signature', sa.Text),
        sa.Column('noc_closure_notes', sa.Text),
        sa.Column('incident_triggered', sa.Boolean),
        sa.Column('incident_details', sa.Text),
        sa.Column('rollback_triggered', sa.Boolean),
        sa.Column('rollback_details', sa.Text),
        sa.Column('noc_closure_justification', sa.Text),
        sa.Column('noc_signature', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('deployment_completed_at', sa.DateTime),
        sa.Column('version_id', sa.Integer, nullable=False, server_default='1'),
        sa.CheckConstraint('current_stage BETWEEN 1 AND 10', name='chk_cr_stage_range'),
    )

    op.create_index('ix_change_requests_cr_number', 'change_requests', ['cr_number'], unique=True)
    op.create_index('ix_change_requests_requested_by', 'change_requests', ['requested_by'])
    op.create_index('ix_change_requests_line_manager_id', 'change_requests', ['line_manager_id'])
    op.create_index('ix_change_requests_business_priority', 'change_requests', ['business_priority'])
    op.create_index('ix_change_requests_current_stage', 'change_requests', ['current_stage'])
    op.create_index('ix_change_requests_current_status', 'change_requests', ['current_status'])
    op.create_index('ix_change_requests_assigned_to_it_officer_id', 'change_requests', ['assigned_to_it_officer_id'])
    op.create_index('ix_change_requests_created_at', 'change_requests', ['created_at'], postgresql_ops={'created_at': 'DESC'})

    op.create_table(
        'cr_approvals',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stage', sa.Integer, nullable=False),
        sa.Column('approver_id', sa.Integer, nullable=False),
        sa.Column('approver_role', sa.Enum(*ROLES, name='crrole'), nullable=False),
        sa.Column('status', sa.Enum('approved', 'rejected', name='approvaloutcome'), nullable=False),
        sa.Column('signature_file_path', sa.Text),
        sa.Column('comments', sa.Text),
        sa.Column('risk_accepted', sa.Boolean),
        sa.Column('approved_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_cr_approvals_cr_id', 'cr_approvals', ['cr_id'])
    op.create_index('ix_cr_approvals_approver_id', 'cr_approvals', ['approver_id'])

    op.create_table(
        'cr_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('changed_by', sa.Integer, nullable=False),
        sa.Column('action', sa.Enum(*HISTORY_ACTIONS, name='historyaction'), nullable=False),
        sa.Column('from_stage', sa.Integer),
        sa.Column('to_stage', sa.Integer),
        sa.Column('from_status', sa.String(50)),
        sa.Column('to_status', sa.String(50)),
        sa.Column('notes', sa.Text),
        sa.Column('additional_data', postgresql.JSONB),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_cr_history_cr_id', 'cr_history', ['cr_id'])
    op.create_index('ix_cr_history_changed_by', 'cr_history', ['changed_by'])
    op.create_index('ix_cr_history_created_at', 'cr_history', ['created_at'], postgresql_ops={'created_at': 'DESC'})

    op.create_table(
        'cr_testing_results',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('test_type', sa.String(100), nullable=False),
        sa.Column('tested_by', sa.Integer, nullable=False),
        sa.Column('test_date', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('test_results', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('passed', sa.Boolean),
        sa.Column('notes', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_cr_testing_results_cr_id', 'cr_testing_results', ['cr_id'])

    op.create_table(
        'cr_qa_checklists',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('qa_officer_id', sa.Integer, nullable=False),
        sa.Column('checklist_data', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('validated', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('validation_date', sa.DateTime),
        sa.Column('notes', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_cr_qa_checklists_cr_id', 'cr_qa_checklists', ['cr_id'])

    op.create_table(
        'cr_deployment_team',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('member_name', sa.String(255), nullable=False),
        sa.Column('designation', sa.String(255)),
        sa.Column('contact', sa.String(255)),
        sa.Column('role', sa.String(50), nullable=False, server_default='member'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_cr_deployment_team_cr_id', 'cr_deployment_team', ['cr_id'])

    op.create_table(
        'cr_attachments',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cr_id', sa.Integer, sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('file_size', sa.Integer),
        sa.Column('file_type', sa.Enum('SIGNATURE', 'UAT_DOCUMENTATION', name='attachmenttype'), nullable=False),
        sa.Column('uploaded_by', sa.Integer, nullable=False),
        sa.Column('uploaded_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('file_path', name='uq_cr_attachment_path'),
    )
    op.create_index('ix_cr_attachments_cr_id', 'cr_attachments', ['cr_id'])


def downgrade() -> None:
    # Drop tables (children first)
    op.drop_table('cr_attachments')
    op.drop_table('cr_deployment_team')
    op.drop_table('cr_qa_checklists')
    op.drop_table('cr_testing_results')
    op.drop_table('cr_history')
    op.drop_table('cr_approvals')
    op.drop_table('change_requests')
    op.drop_table('cr_sequences')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS attachmenttype')
    op.execute('DROP TYPE IF EXISTS historyaction')
    op.execute('DROP TYPE IF EXISTS approvaloutcome')
    op.execute('DROP TYPE IF EXISTS crrole')
    op.execute('DROP TYPE IF EXISTS downtimeunit')
    op.execute('DROP TYPE IF EXISTS crstatus')
    op.execute('DROP TYPE IF EXISTS businesspriority')
