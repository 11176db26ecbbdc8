from typing import Optional
import logging
from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from .. import crud, grants, schemas, models, security, permissions
from ..database import get_db, utcnow
from ..errors import AuthorizationError, ValidationError
from ..security import Principal
from ..services.notification_queue import NotificationQueue, get_notification_queue
from ..tokens import CapabilityTokenCodec, get_codec

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/grants",
    tags=["Authorization Grants"],
    responses={404: {"description": "Not found"}},
)


def _client(request: Request):
    return (request.client.host if request.client else None), request.headers.get("user-agent")


def _bind_practitioner(principal: Principal, requested_id: Optional[int]) -> int:
    """The requesting practitioner is always the authenticated one."""
    if requested_id is not None and requested_id != principal.practitioner_id:
        raise AuthorizationError("requestingPractitionerId must be the authenticated practitioner")
    return principal.practitioner_id


def _ensure_can_view(db: Session, principal: Principal, grant: models.AuthorizationGrant) -> None:
    if principal.role == permissions.ACTOR_PATIENT and grant.subject_id == principal.patient_id:
        return
    if principal.role == permissions.ACTOR_PRACTITIONER:
        practitioner = crud.directory.get_practitioner(db, principal.practitioner_id)
        if practitioner is not None and practitioner.is_active and practitioner.organization_id == grant.organization_id:
            return
    raise AuthorizationError("Not allowed to view this grant")


def _request_response(result: crud.GrantRequestResult) -> schemas.GrantRequestResponse:
    return schemas.GrantRequestResponse(
        grant=schemas.AuthorizationGrantResponse.from_grant(result.grant, utcnow()),
        qr_display_url=result.qr_display_url,
        scan_url=result.scan_url,
        access_token=result.access_token.token if result.access_token else None,
        access_token_expires_at=result.access_token.expires_at if result.access_token else None,
        stale_scan=result.stale_scan,
    )


@router.post("", response_model=schemas.GrantRequestResponse, status_code=201)
def request_authorization_grant(
    grant_request: schemas.AuthorizationGrantCreate,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_practitioner),
    queue: NotificationQueue = Depends(get_notification_queue),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Request access to a patient's records on behalf of an organization.
    """
    ip, user_agent = _client(request)
    grant_request = grant_request.model_copy(update={
        "requesting_practitioner_id": _bind_practitioner(principal, grant_request.requesting_practitioner_id)
    })
    result = crud.request_grant(
        db, grant_request, actor=principal.actor, request_ip=ip, user_agent=user_agent,
        queue=queue, codec=codec,
    )
    return _request_response(result)


@router.post("/scan", response_model=schemas.GrantRequestResponse, status_code=201)
def request_grant_from_scan(
    scan_request: schemas.ScanGrantRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_practitioner),
    queue: NotificationQueue = Depends(get_notification_queue),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Request a grant from a scanned patient QR code. The response carries a
    short-lived access token scoped to the new grant.
    """
    ip, user_agent = _client(request)
    scan_request = scan_request.model_copy(update={
        "requesting_practitioner_id": _bind_practitioner(principal, scan_request.requesting_practitioner_id)
    })
    result = crud.request_grant_from_scan(
        db, scan_request, actor=principal.actor, request_ip=ip, user_agent=user_agent,
        queue=queue, codec=codec,
    )
    return _request_response(result)


@router.get("", response_model=schemas.GrantListResponse)
def list_authorization_grants(
    user_id: Optional[int] = Query(None, alias="userId"),
    organization_id: Optional[int] = Query(None, alias="organizationId"),
    status: Optional[models.GrantStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_grant_party),
):
    """
    Query grants by patient or organization. Patients only see their own
    grants; practitioners only see their organization's.
    """
    if principal.role == permissions.ACTOR_PATIENT:
        if user_id is not None and user_id != principal.patient_id:
            raise AuthorizationError("Patients may only list their own grants")
        user_id = principal.patient_id
    else:
        practitioner = crud.directory.get_practitioner(db, principal.practitioner_id)
        if practitioner is None or not practitioner.is_active:
            raise AuthorizationError("Practitioner is not active")
        if organization_id is not None and organization_id != practitioner.organization_id:
            raise AuthorizationError("Practitioners may only list their organization's grants")
        if user_id is None and organization_id is None:
            raise ValidationError("Either userId or organizationId is required")
        organization_id = practitioner.organization_id

    now = utcnow()
    rows, total = crud.list_grants(db, subject_id=user_id, organization_id=organization_id,
                                   status=status, limit=limit, offset=offset, now=now)
    return schemas.GrantListResponse(
        grants=[schemas.AuthorizationGrantResponse.from_grant(g, now) for g in rows],
        pagination=schemas.Pagination(total=total, limit=limit, offset=offset,
                                      has_more=offset + len(rows) < total),
    )


@router.get("/{grant_id}", response_model=schemas.GrantDetailResponse)
def get_authorization_grant(
    grant_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_grant_party),
):
    grant = crud.get_grant(db, grant_id)
    _ensure_can_view(db, principal, grant)
    now = utcnow()
    state = grants.GrantState.from_grant(grant)
    return schemas.GrantDetailResponse(
        grant=schemas.AuthorizationGrantResponse.from_grant(grant, now),
        allowed_actions=grants.allowed_actions(state, now),
        is_expired=grants.is_expired(state, now),
        is_active=grants.is_active(state, now),
    )


@router.post("/{grant_id}/action", response_model=schemas.GrantActionResponse)
def perform_grant_action(
    grant_id: int,
    action_request: schemas.GrantActionRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(security.require_grant_party),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    """
    Approve, deny or revoke a grant. An invalid transition answers 400 with
    the current status and the actions that are allowed.
    """
    ip, user_agent = _client(request)
    result = crud.perform_action(
        db, grant_id, action_request, principal.actor,
        request_ip=ip, user_agent=user_agent, queue=queue,
    )
    return schemas.GrantActionResponse(
        grant=schemas.AuthorizationGrantResponse.from_grant(result.grant, utcnow()),
        action=result.action,
        previous_status=result.previous_status,
        new_status=result.new_status,
    )


@router.get("/{grant_id}/permissions/{scope}", response_model=schemas.PermissionCheckResponse)
def check_grant_permission(
    grant_id: int,
    scope: str,
    x_grant_token: str = Header(..., alias="X-Grant-Token"),
    db: Session = Depends(get_db),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Check one scope of a grant using the access token issued at scan time.
    """
    claims = codec.verify_access_token(x_grant_token)
    if claims.get("grant_id") != grant_id:
        raise AuthorizationError("Access token does not cover this grant")
    allowed = crud.check_grant_permission(db, grant_id, scope)
    return schemas.PermissionCheckResponse(grant_id=grant_id, scope=scope, allowed=allowed)
