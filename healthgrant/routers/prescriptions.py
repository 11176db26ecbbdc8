from datetime import timedelta
import logging
from fastapi import APIRouter, Depends, Request

from .. import schemas, security, models
from ..compliance_logger import compliance_logger
from ..errors import SignatureVerificationError, TokenExpiredError, ValidationError
from ..security import Principal
from ..tokens import CapabilityTokenCodec, get_codec, parse_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/prescriptions",
    tags=["Prescriptions"],
    dependencies=[Depends(security.get_current_principal)],
)


@router.post("/tokens", response_model=schemas.PrescriptionTokenResponse, status_code=201)
def issue_prescription_token(
    token_request: schemas.PrescriptionTokenRequest,
    request: Request,
    principal: Principal = Depends(security.require_practitioner),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Issue a signed prescription token for a pharmacy QR code.
    """
    now = codec.clock()
    data = token_request.model_dump(mode="json", by_alias=True, exclude_none=True)
    data["type"] = "prescription"
    data["version"] = "1.0"
    data.setdefault("issuedAt", now.isoformat())
    data.setdefault("expiresAt", (now + timedelta(days=codec.settings.prescription_validity_days)).isoformat())

    token = codec.issue_prescription_token(data)
    compliance_logger.log_event(
        models.AuditAction.PRESCRIPTION_TOKEN_ISSUED,
        actor_id=principal.actor.actor_id,
        actor_type=principal.role,
        category='TOKENS',
        details=f"Prescription token for encounter {token_request.encounter_id} #{token_request.prescription_index}",
        resource_type='prescription',
        ip_address=request.client.host if request.client else None,
    )
    return schemas.PrescriptionTokenResponse(token=token, expires_at=parse_timestamp(data["expiresAt"]))


@router.post("/verify", response_model=schemas.PrescriptionVerifyResponse)
def verify_prescription_token(
    verify_request: schemas.PrescriptionVerifyRequest,
    request: Request,
    principal: Principal = Depends(security.require_practitioner),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Verify a scanned prescription token: 400 malformed, 401 bad signature,
    410 expired.
    """
    ip = request.client.host if request.client else None
    try:
        prescription = codec.verify_prescription_token(verify_request.token)
    except (SignatureVerificationError, TokenExpiredError) as e:
        compliance_logger.log_security_event(
            models.AuditAction.PRESCRIPTION_REJECTED,
            details=e.message,
            actor_id=principal.actor.actor_id,
            actor_type=principal.role,
            ip_address=ip,
        )
        raise
    if prescription is None:
        raise ValidationError("Malformed prescription token")

    compliance_logger.log_event(
        models.AuditAction.PRESCRIPTION_VERIFIED,
        actor_id=principal.actor.actor_id,
        actor_type=principal.role,
        category='TOKENS',
        details=f"Verified prescription for encounter {prescription.get('encounterId')}",
        resource_type='prescription',
        ip_address=ip,
    )
    return schemas.PrescriptionVerifyResponse(valid=True, prescription=prescription)
