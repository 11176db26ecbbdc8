"""Initial grant, notification queue and audit schema

Revision ID: 0001
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

grant_status = sa.Enum('PENDING', 'ACTIVE', 'EXPIRED', 'REVOKED', name='grant_status')
job_type = sa.Enum('AUTHORIZATION_REQUEST', 'STATUS_UPDATE', 'REMINDER', 'SYSTEM_ALERT',
                   name='notification_job_type')
job_status = sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'RETRYING',
                     name='notification_job_status')
audit_action = sa.Enum(
    'AUTHORIZATION_REQUESTED', 'AUTHORIZATION_APPROVED', 'AUTHORIZATION_DENIED',
    'AUTHORIZATION_REVOKED', 'AUTHORIZATION_EXPIRED', 'PATIENT_QR_GENERATED',
    'INVALID_QR_CODE_SCAN', 'PRESCRIPTION_TOKEN_ISSUED', 'PRESCRIPTION_VERIFIED',
    'PRESCRIPTION_REJECTED', 'ACCESS_DENIED', 'QUEUE_PROCESSED', 'QUEUE_CLEANUP',
    name='audit_action',
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('digital_identifier', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('device_tokens', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_patients_id', 'patients', ['id'])
    op.create_index('ix_patients_digital_identifier', 'patients', ['digital_identifier'], unique=True)

    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('organization_type', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_organizations_id', 'organizations', ['id'])

    op.create_table(
        'practitioners',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('practitioner_type', sa.String(50), nullable=True),
        sa.Column('license_number', sa.String(100), nullable=True),
        sa.Column('can_request_authorization_grants', sa.Boolean(), nullable=True),
        sa.Column('can_approve_authorization_grants', sa.Boolean(), nullable=True),
        sa.Column('can_revoke_authorization_grants', sa.Boolean(), nullable=True),
        sa.Column('can_access_patient_records', sa.Boolean(), nullable=True),
        sa.Column('can_modify_patient_records', sa.Boolean(), nullable=True),
        sa.Column('can_view_audit_logs', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_practitioners_id', 'practitioners', ['id'])
    op.create_index('idx_practitioners_org_active', 'practitioners', ['organization_id', 'is_active'])

    op.create_table(
        'authorization_grants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('requesting_practitioner_id', sa.Integer(), sa.ForeignKey('practitioners.id'), nullable=True),
        sa.Column('status', grant_status, nullable=False),
        sa.Column('time_window_hours', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('justification', sa.Text(), nullable=True),
        sa.Column('can_view_medical_history', sa.Boolean(), nullable=False),
        sa.Column('can_view_prescriptions', sa.Boolean(), nullable=False),
        sa.Column('can_create_encounters', sa.Boolean(), nullable=False),
        sa.Column('can_view_audit_logs', sa.Boolean(), nullable=False),
        sa.Column('request_ip', sa.String(45), nullable=True),
        sa.Column('request_user_agent', sa.Text(), nullable=True),
        sa.Column('device_info', sa.JSON(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('request_source', sa.String(50), nullable=True),
        sa.Column('urgency_level', sa.String(20), nullable=True),
        sa.Column('last_action_by', sa.String(64), nullable=True),
        sa.Column('last_action_reason', sa.Text(), nullable=True),
        sa.Column('expiry_reminder_sent', sa.Boolean(), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_authorization_grants_id', 'authorization_grants', ['id'])
    op.create_index('idx_grants_subject_org_status', 'authorization_grants',
                    ['subject_id', 'organization_id', 'status', 'expires_at'])
    op.create_index('idx_grants_status_expires', 'authorization_grants', ['status', 'expires_at'])
    op.create_index('idx_grants_org_status', 'authorization_grants', ['organization_id', 'status'])
    op.create_index('idx_grants_practitioner_status', 'authorization_grants',
                    ['requesting_practitioner_id', 'status'])

    op.create_table(
        'notification_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('type', job_type, nullable=False),
        sa.Column('status', job_status, nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('recipient_type', sa.String(20), nullable=True),
        sa.Column('device_tokens', sa.JSON(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_history', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_notification_jobs_id', 'notification_jobs', ['id'])
    op.create_index('idx_jobs_status_priority', 'notification_jobs', ['status', 'priority', 'scheduled_at'])
    op.create_index('idx_jobs_recipient_status', 'notification_jobs', ['recipient_id', 'status'])
    op.create_index('idx_jobs_type_status', 'notification_jobs', ['type', 'status'])
    op.create_index('idx_jobs_retry_status', 'notification_jobs', ['next_retry_at', 'status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.String(64), nullable=True),
        sa.Column('actor_type', sa.String(20), nullable=True),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=True),
        sa.Column('resource_type', sa.String(50), nullable=True),
        sa.Column('resource_id', sa.Integer(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_category', 'audit_logs', ['category'])
    op.create_index('ix_audit_logs_severity', 'audit_logs', ['severity'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('idx_audit_actor_date', 'audit_logs', ['actor_id', 'timestamp'])
    op.create_index('idx_audit_action_date', 'audit_logs', ['action', 'timestamp'])
    op.create_index('idx_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('audit_logs')
    op.drop_table('notification_jobs')
    op.drop_table('authorization_grants')
    op.drop_table('practitioners')
    op.drop_table('organizations')
    op.drop_table('patients')
    bind = op.get_bind()
    for enum_type in (audit_action, job_status, job_type, grant_status):
        enum_type.drop(bind, checkfirst=True)
