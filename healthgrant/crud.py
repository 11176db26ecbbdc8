# healthgrant/crud.py - grant orchestration, the only place grants are mutated
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from . import grants, models, permissions, schemas
from .compliance_logger import ComplianceLogger, compliance_logger
from .database import utcnow
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .permissions import Actor
from .services.notification_queue import NotificationQueue
from .tokens import AccessToken, CapabilityTokenCodec

logger = logging.getLogger(__name__)

ACTION_AUDIT = {
    models.GrantAction.approve: models.AuditAction.AUTHORIZATION_APPROVED,
    models.GrantAction.deny: models.AuditAction.AUTHORIZATION_DENIED,
    models.GrantAction.revoke: models.AuditAction.AUTHORIZATION_REVOKED,
}

ACTION_STATUS_MESSAGE = {
    models.GrantAction.approve: "approved",
    models.GrantAction.deny: "denied",
    models.GrantAction.revoke: "revoked",
}

URGENT_WINDOW_HOURS = 2


@dataclass
class GrantRequestResult:
    grant: models.AuthorizationGrant
    qr_display_url: str
    scan_url: str
    access_token: Optional[AccessToken] = None
    stale_scan: bool = False


@dataclass
class GrantActionResult:
    grant: models.AuthorizationGrant
    action: models.GrantAction
    previous_status: models.GrantStatus
    new_status: models.GrantStatus


# ==================== DIRECTORY LOOKUPS ====================

class Directory:
    """Read-only lookups of the entities a grant refers to."""

    def get_patient(self, db: Session, patient_id: int) -> Optional[models.Patient]:
        return db.query(models.Patient).filter(
            models.Patient.id == patient_id, models.Patient.is_active.is_(True)
        ).first()

    def get_patient_by_identifier(self, db: Session, digital_identifier: str) -> Optional[models.Patient]:
        return db.query(models.Patient).filter(
            models.Patient.digital_identifier == digital_identifier, models.Patient.is_active.is_(True)
        ).first()

    def get_organization(self, db: Session, organization_id: int) -> Optional[models.Organization]:
        return db.query(models.Organization).filter(
            models.Organization.id == organization_id, models.Organization.is_active.is_(True)
        ).first()

    def get_practitioner(self, db: Session, practitioner_id: int) -> Optional[models.Practitioner]:
        return db.query(models.Practitioner).filter(models.Practitioner.id == practitioner_id).first()


directory = Directory()


def _practitioner_name(practitioner: Optional[models.Practitioner]) -> Optional[str]:
    return practitioner.display_name if practitioner is not None else None


def _deny(audit: ComplianceLogger, actor: Optional[Actor], reason: str, resource_id: Optional[int] = None,
          request_ip: Optional[str] = None, user_agent: Optional[str] = None) -> AuthorizationError:
    audit.log_security_event(
        models.AuditAction.ACCESS_DENIED,
        details=reason,
        actor_id=actor.actor_id if actor else None,
        actor_type=actor.actor_type if actor else None,
        resource_type='authorization_grant',
        resource_id=resource_id,
        ip_address=request_ip,
        user_agent=user_agent,
    )
    return AuthorizationError(reason)


# ==================== GRANT QUERIES ====================

def find_active_grant(db: Session, subject_id: int, organization_id: int,
                      now: datetime) -> Optional[models.AuthorizationGrant]:
    return db.query(models.AuthorizationGrant).filter(
        models.AuthorizationGrant.subject_id == subject_id,
        models.AuthorizationGrant.organization_id == organization_id,
        models.AuthorizationGrant.status == models.GrantStatus.ACTIVE,
        models.AuthorizationGrant.expires_at > now,
        models.AuthorizationGrant.deleted_at.is_(None),
    ).order_by(models.AuthorizationGrant.id.desc()).first()


def get_grant(db: Session, grant_id: int) -> models.AuthorizationGrant:
    grant = db.query(models.AuthorizationGrant).filter(
        models.AuthorizationGrant.id == grant_id,
        models.AuthorizationGrant.deleted_at.is_(None),
    ).first()
    if grant is None:
        raise NotFoundError("Authorization grant")
    return grant


def _status_filter(status: models.GrantStatus, now: datetime):
    live = (models.GrantStatus.PENDING, models.GrantStatus.ACTIVE)
    column = models.AuthorizationGrant.status
    expires = models.AuthorizationGrant.expires_at
    if status in live:
        return and_(column == status, expires > now)
    if status == models.GrantStatus.EXPIRED:
        return or_(column == models.GrantStatus.EXPIRED, and_(column.in_(live), expires <= now))
    return column == status


def list_grants(
    db: Session,
    subject_id: Optional[int] = None,
    organization_id: Optional[int] = None,
    status: Optional[models.GrantStatus] = None,
    limit: int = 20,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> Tuple[List[models.AuthorizationGrant], int]:
    """Grants for a patient or an organization; ``status`` matches the effective status."""
    if subject_id is None and organization_id is None:
        raise ValidationError("Either userId or organizationId is required")
    if not 1 <= limit <= 100:
        raise ValidationError("limit must be between 1 and 100")
    if offset < 0:
        raise ValidationError("offset cannot be negative")
    now = now or utcnow()

    query = db.query(models.AuthorizationGrant).filter(models.AuthorizationGrant.deleted_at.is_(None))
    if subject_id is not None:
        query = query.filter(models.AuthorizationGrant.subject_id == subject_id)
    if organization_id is not None:
        query = query.filter(models.AuthorizationGrant.organization_id == organization_id)
    if status is not None:
        query = query.filter(_status_filter(models.GrantStatus(status), now))

    total = query.count()
    rows = (
        query.order_by(models.AuthorizationGrant.created_at.desc(), models.AuthorizationGrant.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


# ==================== GRANT REQUEST ====================

def request_grant(
    db: Session,
    request: schemas.AuthorizationGrantCreate,
    *,
    actor: Optional[Actor] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    directory: Directory = directory,
    queue: Optional[NotificationQueue] = None,
    codec: Optional[CapabilityTokenCodec] = None,
    audit: ComplianceLogger = compliance_logger,
    now: Optional[datetime] = None,
) -> GrantRequestResult:
    """Create a grant for (patient, organization).

    Validation, permission and conflict failures all happen before anything
    is written. The grant and its notification job are committed together.
    """
    queue = queue or NotificationQueue()
    codec = codec or CapabilityTokenCodec()
    now = now or utcnow()

    grants.validate_time_window(request.time_window_hours)
    scope_names = list(request.access_scope)
    flags = grants.scope_flags(scope_names)
    auto_approve = request.metadata.auto_approve

    patient = directory.get_patient(db, request.user_id)
    if patient is None:
        raise NotFoundError("Patient")
    organization = directory.get_organization(db, request.organization_id)
    if organization is None:
        raise NotFoundError("Organization")

    practitioner = None
    if request.requesting_practitioner_id is not None:
        practitioner = directory.get_practitioner(db, request.requesting_practitioner_id)
        if practitioner is None:
            raise NotFoundError("Practitioner")
        check = permissions.can_request_grant(practitioner, organization.id, scope_names)
        if not check:
            raise _deny(audit, actor, check.reason, request_ip=request_ip, user_agent=user_agent)

    if auto_approve:
        check = permissions.can_auto_approve(practitioner, organization.id)
        if not check:
            raise _deny(audit, actor, check.reason, request_ip=request_ip, user_agent=user_agent)

    existing = find_active_grant(db, patient.id, organization.id, now)
    if existing is not None:
        logger.info(f"Duplicate grant request for patient {patient.id} / org {organization.id}: grant {existing.id} active")
        raise ConflictError(
            "An active authorization grant already exists for this patient and organization",
            existing_grant_id=existing.id,
        )

    status = models.GrantStatus.ACTIVE if auto_approve else models.GrantStatus.PENDING
    grant = models.AuthorizationGrant(
        subject_id=patient.id,
        organization_id=organization.id,
        requesting_practitioner_id=practitioner.id if practitioner else None,
        status=status,
        time_window_hours=request.time_window_hours,
        expires_at=grants.compute_expiry(now, request.time_window_hours),
        granted_at=now if auto_approve else None,
        justification=request.justification,
        request_ip=request_ip,
        request_user_agent=user_agent,
        device_info=request.device_info,
        latitude=request.latitude,
        longitude=request.longitude,
        request_source=request.metadata.request_source,
        urgency_level=request.metadata.urgency_level,
        created_by=actor.actor_id if actor else None,
        created_at=now,
        updated_at=now,
        **flags,
    )
    db.add(grant)
    db.flush()

    if auto_approve:
        queue.enqueue_status_update(db, patient.id, grant.id, "approved",
                                    device_tokens=patient.device_tokens, commit=False)
    else:
        queue.enqueue_authorization_request(
            db, patient.id, grant.id, organization.name,
            practitioner_name=_practitioner_name(practitioner),
            is_urgent=request.time_window_hours <= URGENT_WINDOW_HOURS,
            device_tokens=patient.device_tokens,
            commit=False,
        )
    db.commit()
    db.refresh(grant)

    logger.info(f"Grant {grant.id} created with status {grant.status.value} for patient {patient.id} / org {organization.id}")
    audit.log_grant_event(
        models.AuditAction.AUTHORIZATION_REQUESTED,
        grant,
        actor_id=actor.actor_id if actor else None,
        actor_type=actor.actor_type if actor else None,
        reason=request.justification,
        ip_address=request_ip,
        user_agent=user_agent,
    )
    return GrantRequestResult(
        grant=grant,
        qr_display_url=codec.qr_display_url(grant.id),
        scan_url=codec.scan_url(grant.id),
    )


def request_grant_from_scan(
    db: Session,
    request: schemas.ScanGrantRequest,
    *,
    actor: Optional[Actor] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    directory: Directory = directory,
    queue: Optional[NotificationQueue] = None,
    codec: Optional[CapabilityTokenCodec] = None,
    audit: ComplianceLogger = compliance_logger,
    now: Optional[datetime] = None,
) -> GrantRequestResult:
    """Resolve a scanned patient QR and request a grant for its patient.

    The result carries a grant access token so the scanning device can make
    follow-up calls scoped to exactly this grant.
    """
    codec = codec or CapabilityTokenCodec()
    scanned = codec.validate_patient_token(request.scanned_data)
    if scanned is None:
        audit.log_security_event(
            models.AuditAction.INVALID_QR_CODE_SCAN,
            details="Unreadable patient QR code",
            actor_id=actor.actor_id if actor else None,
            actor_type=actor.actor_type if actor else None,
            ip_address=request_ip,
            user_agent=user_agent,
        )
        raise ValidationError("Invalid QR code")

    patient = directory.get_patient_by_identifier(db, scanned.digital_identifier)
    if patient is None:
        raise NotFoundError("Patient")

    grant_request = schemas.AuthorizationGrantCreate(
        user_id=patient.id,
        organization_id=request.organization_id,
        requesting_practitioner_id=request.requesting_practitioner_id,
        time_window_hours=request.time_window_hours,
        access_scope=request.access_scope,
        justification=request.justification,
        metadata=schemas.GrantRequestMetadata(
            request_source="qr_scan",
            urgency_level=request.metadata.urgency_level,
        ),
        device_info=request.device_info,
        latitude=request.latitude,
        longitude=request.longitude,
    )
    result = request_grant(
        db, grant_request,
        actor=actor, request_ip=request_ip, user_agent=user_agent,
        directory=directory, queue=queue, codec=codec, audit=audit, now=now,
    )
    result.access_token = codec.issue_access_token(patient.digital_identifier, result.grant.id)
    result.stale_scan = scanned.stale
    return result


# ==================== GRANT ACTIONS ====================

def perform_action(
    db: Session,
    grant_id: int,
    action_request: schemas.GrantActionRequest,
    actor: Actor,
    *,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    directory: Directory = directory,
    queue: Optional[NotificationQueue] = None,
    audit: ComplianceLogger = compliance_logger,
    now: Optional[datetime] = None,
) -> GrantActionResult:
    """Approve, deny or revoke a grant on behalf of ``actor``."""
    queue = queue or NotificationQueue()
    now = now or utcnow()
    action = models.GrantAction(action_request.action)

    grant = get_grant(db, grant_id)

    if action_request.action_by is not None and action_request.action_by != actor.actor_id:
        raise _deny(audit, actor, "actionBy does not match the authenticated actor", grant.id,
                    request_ip, user_agent)

    practitioner = None
    if actor.actor_type == permissions.ACTOR_PRACTITIONER:
        try:
            practitioner = directory.get_practitioner(db, int(actor.actor_id))
        except ValueError:
            practitioner = None
    check = permissions.can_perform_action(actor, grant, action.value, practitioner)
    if not check:
        raise _deny(audit, actor, check.reason, grant.id, request_ip, user_agent)

    state = grants.GrantState.from_grant(grant)
    new_state = grants.transition(state, action, now)

    new_state.apply_to(grant)
    grant.last_action_by = actor.actor_id
    grant.last_action_reason = action_request.reason
    grant.updated_at = now

    patient = grant.subject
    queue.enqueue_status_update(
        db, grant.subject_id, grant.id, ACTION_STATUS_MESSAGE[action],
        device_tokens=patient.device_tokens if patient else None,
        commit=False,
    )
    db.commit()
    db.refresh(grant)

    logger.info(f"Grant {grant.id}: {action.value} by {actor.actor_type} {actor.actor_id} "
                f"({state.status.value} -> {new_state.status.value})")
    audit.log_grant_event(
        ACTION_AUDIT[action],
        grant,
        actor_id=actor.actor_id,
        actor_type=actor.actor_type,
        previous_status=state.status.value,
        reason=action_request.reason,
        ip_address=request_ip,
        user_agent=user_agent,
    )
    return GrantActionResult(
        grant=grant,
        action=action,
        previous_status=state.status,
        new_status=new_state.status,
    )


def check_grant_permission(db: Session, grant_id: int, scope: str,
                           now: Optional[datetime] = None) -> bool:
    """Permission check for a grant; a missing grant is a plain deny."""
    grant = db.query(models.AuthorizationGrant).filter(models.AuthorizationGrant.id == grant_id).first()
    return grants.has_permission(grant, scope, now or utcnow())


# ==================== SWEEPS ====================

def expire_overdue_grants(
    db: Session,
    *,
    queue: Optional[NotificationQueue] = None,
    audit: ComplianceLogger = compliance_logger,
    now: Optional[datetime] = None,
) -> int:
    """Write EXPIRED onto PENDING/ACTIVE grants whose window has passed."""
    queue = queue or NotificationQueue()
    now = now or utcnow()
    overdue = db.query(models.AuthorizationGrant).filter(
        models.AuthorizationGrant.status.in_((models.GrantStatus.PENDING, models.GrantStatus.ACTIVE)),
        models.AuthorizationGrant.expires_at < now,
        models.AuthorizationGrant.deleted_at.is_(None),
    ).all()

    expired = []
    for grant in overdue:
        previous = grant.status.value
        grant.status = models.GrantStatus.EXPIRED
        grant.updated_at = now
        queue.enqueue_status_update(
            db, grant.subject_id, grant.id, "expired",
            device_tokens=grant.subject.device_tokens if grant.subject else None,
            commit=False,
        )
        expired.append((grant, previous))
    db.commit()

    for grant, previous in expired:
        audit.log_grant_event(models.AuditAction.AUTHORIZATION_EXPIRED, grant,
                              actor_type='system', previous_status=previous)
    if expired:
        logger.info(f"Expired {len(expired)} overdue grants")
    return len(expired)


def send_expiry_reminders(
    db: Session,
    within_hours: int = 2,
    *,
    queue: Optional[NotificationQueue] = None,
    now: Optional[datetime] = None,
) -> int:
    """Enqueue one REMINDER per ACTIVE grant expiring within ``within_hours``."""
    queue = queue or NotificationQueue()
    now = now or utcnow()
    expiring = db.query(models.AuthorizationGrant).filter(
        models.AuthorizationGrant.status == models.GrantStatus.ACTIVE,
        models.AuthorizationGrant.expires_at > now,
        models.AuthorizationGrant.expires_at <= now + timedelta(hours=within_hours),
        models.AuthorizationGrant.expiry_reminder_sent.is_(False),
        models.AuthorizationGrant.deleted_at.is_(None),
    ).all()

    for grant in expiring:
        queue.enqueue_expiry_reminder(
            db, grant.subject_id, grant.id,
            grant.organization.name if grant.organization else "An organization",
            grant.expires_at,
            device_tokens=grant.subject.device_tokens if grant.subject else None,
            commit=False,
        )
        grant.expiry_reminder_sent = True
    db.commit()

    if expiring:
        logger.info(f"Queued {len(expiring)} expiry reminders")
    return len(expiring)
