# healthgrant/models.py
from sqlalchemy import (
    Column, Integer, String, ForeignKey, Text, Float,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index
)
from sqlalchemy.orm import relationship
from .database import Base, UTCDateTime, utcnow
import enum


class GrantStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class GrantAction(str, enum.Enum):
    approve = "approve"
    deny = "deny"
    revoke = "revoke"


class NotificationJobType(str, enum.Enum):
    AUTHORIZATION_REQUEST = "AUTHORIZATION_REQUEST"
    STATUS_UPDATE = "STATUS_UPDATE"
    REMINDER = "REMINDER"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class NotificationJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class JobPriority(int, enum.Enum):
    LOW = 1
    NORMAL = 5
    HIGH = 8
    URGENT = 10


class AuditAction(str, enum.Enum):
    AUTHORIZATION_REQUESTED = "AUTHORIZATION_REQUESTED"
    AUTHORIZATION_APPROVED = "AUTHORIZATION_APPROVED"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    AUTHORIZATION_REVOKED = "AUTHORIZATION_REVOKED"
    AUTHORIZATION_EXPIRED = "AUTHORIZATION_EXPIRED"
    PATIENT_QR_GENERATED = "PATIENT_QR_GENERATED"
    INVALID_QR_CODE_SCAN = "INVALID_QR_CODE_SCAN"
    PRESCRIPTION_TOKEN_ISSUED = "PRESCRIPTION_TOKEN_ISSUED"
    PRESCRIPTION_VERIFIED = "PRESCRIPTION_VERIFIED"
    PRESCRIPTION_REJECTED = "PRESCRIPTION_REJECTED"
    ACCESS_DENIED = "ACCESS_DENIED"
    QUEUE_PROCESSED = "QUEUE_PROCESSED"
    QUEUE_CLEANUP = "QUEUE_CLEANUP"


# ==================== Directory (referenced entities) ====================

class Patient(Base):
    """Minimal patient reference; clinical data lives elsewhere."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    digital_identifier = Column(String(64), unique=True, index=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    device_tokens = Column(JSON, nullable=True)  # push registration tokens
    is_active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    grants = relationship("AuthorizationGrant", back_populates="subject")


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    organization_type = Column(String(50), nullable=True)  # hospital, clinic, pharmacy
    is_active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    practitioners = relationship("Practitioner", back_populates="organization")
    grants = relationship("AuthorizationGrant", back_populates="organization")


class Practitioner(Base):
    """Organization member and the permission flags the grant workflow consults."""
    __tablename__ = "practitioners"
    __table_args__ = (
        Index('idx_practitioners_org_active', 'organization_id', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    display_name = Column(String(255), nullable=True)
    practitioner_type = Column(String(50), nullable=True)  # doctor, pharmacist, nurse
    license_number = Column(String(100), nullable=True)

    can_request_authorization_grants = Column(Boolean, default=True)
    can_approve_authorization_grants = Column(Boolean, default=False)
    can_revoke_authorization_grants = Column(Boolean, default=False)
    can_access_patient_records = Column(Boolean, default=True)
    can_modify_patient_records = Column(Boolean, default=False)
    can_view_audit_logs = Column(Boolean, default=False)

    is_active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    organization = relationship("Organization", back_populates="practitioners")


# ==================== Authorization grants ====================

class AuthorizationGrant(Base):
    """Time-boxed, scoped access for an organization to a patient's records.

    ``status`` is authoritative for PENDING/ACTIVE/REVOKED; EXPIRED is derived
    from ``expires_at`` at read time (see ``healthgrant.grants``) and only
    written by the expiry sweep.
    """
    __tablename__ = "authorization_grants"
    __table_args__ = (
        Index('idx_grants_subject_org_status', 'subject_id', 'organization_id', 'status', 'expires_at'),
        Index('idx_grants_status_expires', 'status', 'expires_at'),
        Index('idx_grants_org_status', 'organization_id', 'status'),
        Index('idx_grants_practitioner_status', 'requesting_practitioner_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    requesting_practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=True)

    # Grant details
    status = Column(SQLAlchemyEnum(GrantStatus, name='grant_status'), default=GrantStatus.PENDING, nullable=False)
    time_window_hours = Column(Integer, nullable=False, default=24)
    expires_at = Column(UTCDateTime, nullable=False)
    granted_at = Column(UTCDateTime, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    justification = Column(Text, nullable=True)

    # Access scope (default deny except history/prescriptions)
    can_view_medical_history = Column(Boolean, default=True, nullable=False)
    can_view_prescriptions = Column(Boolean, default=True, nullable=False)
    can_create_encounters = Column(Boolean, default=False, nullable=False)
    can_view_audit_logs = Column(Boolean, default=False, nullable=False)

    # Request metadata, immutable after creation
    request_ip = Column(String(45), nullable=True)
    request_user_agent = Column(Text, nullable=True)
    device_info = Column(JSON, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    request_source = Column(String(50), default="api")
    urgency_level = Column(String(20), default="normal")  # low, normal, high, critical

    # Bookkeeping
    last_action_by = Column(String(64), nullable=True)
    last_action_reason = Column(Text, nullable=True)
    expiry_reminder_sent = Column(Boolean, default=False)

    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)  # Soft delete

    subject = relationship("Patient", back_populates="grants")
    organization = relationship("Organization", back_populates="grants")
    requesting_practitioner = relationship("Practitioner")


# ==================== Notification queue ====================

class NotificationJob(Base):
    """Database-backed notification job, picked up by a later process_batch call."""
    __tablename__ = "notification_jobs"
    __table_args__ = (
        Index('idx_jobs_status_priority', 'status', 'priority', 'scheduled_at'),
        Index('idx_jobs_recipient_status', 'recipient_id', 'status'),
        Index('idx_jobs_type_status', 'type', 'status'),
        Index('idx_jobs_retry_status', 'next_retry_at', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    type = Column(SQLAlchemyEnum(NotificationJobType, name='notification_job_type'), nullable=False)
    status = Column(SQLAlchemyEnum(NotificationJobStatus, name='notification_job_status'),
                    default=NotificationJobStatus.PENDING, nullable=False)
    priority = Column(Integer, default=JobPriority.NORMAL.value, nullable=False)

    # Target
    recipient_id = Column(Integer, nullable=False)
    recipient_type = Column(String(20), default="patient")
    device_tokens = Column(JSON, nullable=True)

    # Content: title, body, icon, badge, data, actions
    payload = Column(JSON, nullable=False)

    # Retry configuration
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_retry_at = Column(UTCDateTime, nullable=True)

    # Execution tracking
    scheduled_at = Column(UTCDateTime, nullable=False, default=utcnow)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)

    last_error = Column(Text, nullable=True)
    error_history = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


# ==================== Audit ====================

class AuditLog(Base):
    """Audit trail for grant lifecycle and token events"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_actor_date', 'actor_id', 'timestamp'),
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(String(64), nullable=True)
    actor_type = Column(String(20), nullable=True)  # patient, practitioner, operator, system
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR, CRITICAL
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(UTCDateTime, default=utcnow, index=True)
