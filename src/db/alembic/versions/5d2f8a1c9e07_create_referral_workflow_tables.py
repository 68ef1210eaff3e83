"""create_referral_workflow_tables

Revision ID: 5d2f8a1c9e07
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5d2f8a1c9e07'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create referrals, intake_packages and audit_logs tables."""
    op.create_table('referrals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('client_name', sa.String(length=255), nullable=False),
        sa.Column('client_email', sa.String(length=255), nullable=False),
        sa.Column('client_phone', sa.String(length=50), nullable=True),
        sa.Column('client_age', sa.Integer(), nullable=True),
        sa.Column('presenting_concerns', sa.Text(), nullable=False),
        sa.Column('urgency', sa.String(length=20), nullable=False),
        sa.Column('insurance_provider', sa.String(length=255), nullable=True),
        sa.Column('insurance_member_id', sa.String(length=100), nullable=True),
        sa.Column('referral_source', sa.String(length=255), nullable=True),
        sa.Column('referral_notes', sa.Text(), nullable=True),
        sa.Column('assigned_therapist', sa.String(length=255), nullable=True),
        sa.Column('client_state', sa.String(length=20), nullable=False),
        sa.Column('workflow_status', sa.String(length=50), nullable=False),
        sa.Column('matching_attempts', sa.Integer(), nullable=False),
        sa.Column('decline_reason', sa.Text(), nullable=True),
        sa.Column('discharge_reason', sa.Text(), nullable=True),
        sa.Column('prestage_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('prestage_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stage_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assignment_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assignment_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acceptance_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('documents_received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('insurance_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('intake_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_session_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('discharged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('exported_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('last_modified_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_modified_by', sa.String(length=100), nullable=True),
        sa.CheckConstraint('matching_attempts >= 0', name='matching_attempts_non_negative'),
        sa.CheckConstraint(
            "client_state IN ('prospective', 'pending', 'active', 'inactive')",
            name='client_state_valid',
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_referrals_client_state'), 'referrals', ['client_state'], unique=False)
    op.create_index(op.f('ix_referrals_workflow_status'), 'referrals', ['workflow_status'], unique=False)
    op.create_index('ix_referrals_state_status', 'referrals', ['client_state', 'workflow_status'], unique=False)

    op.create_table('intake_packages',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('referral_id', sa.UUID(), nullable=False),
        sa.Column('package_name', sa.String(length=255), nullable=False),
        sa.Column('package_type', sa.String(length=50), nullable=False),
        sa.Column('encryption_algorithm', sa.String(length=50), nullable=False),
        sa.Column('encryption_key_id', sa.String(length=512), nullable=True),
        sa.Column('iv', sa.String(length=32), nullable=True),
        sa.Column('auth_tag', sa.String(length=32), nullable=True),
        sa.Column('storage_key', sa.String(length=512), nullable=True),
        sa.Column('storage_url', sa.Text(), nullable=True),
        sa.Column('presigned_url', sa.Text(), nullable=True),
        sa.Column('presigned_url_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('file_size_bytes', sa.Integer(), nullable=True),
        sa.Column('checksum_sha256', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('notification_recipient', sa.String(length=255), nullable=True),
        sa.Column('notification_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('downloaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('last_modified_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'encrypted', 'uploaded', 'downloaded', 'expired', 'error')",
            name='intake_package_status_valid',
        ),
        sa.CheckConstraint(
            'presigned_url_expiry IS NULL OR presigned_url_expiry <= expires_at',
            name='presigned_url_within_object_lifetime',
        ),
        sa.CheckConstraint(
            "status != 'error' OR error_message IS NOT NULL",
            name='error_message_required_on_error',
        ),
        sa.ForeignKeyConstraint(['referral_id'], ['referrals.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_intake_packages_referral_id'), 'intake_packages', ['referral_id'], unique=False)
    op.create_index(op.f('ix_intake_packages_status'), 'intake_packages', ['status'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('resource_type', sa.String(length=100), nullable=False),
        sa.Column('resource_id', sa.String(length=100), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_event_type'), 'audit_logs', ['event_type'], unique=False)
    op.create_index(op.f('ix_audit_logs_user_id'), 'audit_logs', ['user_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_resource_type'), 'audit_logs', ['resource_type'], unique=False)
    op.create_index(op.f('ix_audit_logs_resource_id'), 'audit_logs', ['resource_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_action'), 'audit_logs', ['action'], unique=False)
    op.create_index(op.f('ix_audit_logs_created_at'), 'audit_logs', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop referral workflow tables."""
    op.drop_index(op.f('ix_audit_logs_created_at'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_action'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_resource_id'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_resource_type'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_user_id'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_event_type'), table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index(op.f('ix_intake_packages_status'), table_name='intake_packages')
    op.drop_index(op.f('ix_intake_packages_referral_id'), table_name='intake_packages')
    op.drop_table('intake_packages')
    op.drop_index('ix_referrals_state_status', table_name='referrals')
    op.drop_index(op.f('ix_referrals_workflow_status'), table_name='referrals')
    op.drop_index(op.f('ix_referrals_client_state'), table_name='referrals')
    op.drop_table('referrals')
