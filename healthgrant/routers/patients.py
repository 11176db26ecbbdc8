import base64
from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from .. import crud, models
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..errors import NotFoundError
from ..tokens import CapabilityTokenCodec, QRRenderOptions, get_codec

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


@router.get("/{digital_identifier}/qr")
def get_patient_qr(
    digital_identifier: str,
    request: Request,
    format: str = Query("png", pattern="^(png|svg)$"),
    size: int = Query(10, ge=2, le=40, description="Pixels per QR module"),
    db: Session = Depends(get_db),
    codec: CapabilityTokenCodec = Depends(get_codec),
):
    """
    Patient identification QR image. Served without a bearer token so it can
    be used directly as an image source.
    """
    patient = crud.directory.get_patient_by_identifier(db, digital_identifier)
    if patient is None:
        raise NotFoundError("Patient")

    rendered = codec.issue_patient_token(patient.digital_identifier, fmt=format,
                                         options=QRRenderOptions(box_size=size))
    compliance_logger.log_event(
        models.AuditAction.PATIENT_QR_GENERATED,
        actor_id=str(patient.id),
        actor_type='patient',
        category='TOKENS',
        resource_type='patient',
        resource_id=patient.id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

    headers = {"Cache-Control": "no-store"}
    if format == "svg":
        return Response(content=rendered, media_type="image/svg+xml", headers=headers)
    png = base64.b64decode(rendered[len(PNG_DATA_URL_PREFIX):])
    return Response(content=png, media_type="image/png", headers=headers)
