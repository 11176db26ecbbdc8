# healthgrant/schemas.py
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import GrantStatus, GrantAction, AuthorizationGrant
from . import grants


class BaseSchema(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- Grant Schemas ---

class GrantRequestMetadata(BaseSchema):
    request_source: str = Field(default="api", max_length=50)
    urgency_level: Literal["low", "normal", "high", "critical"] = "normal"
    auto_approve: bool = False


class AuthorizationGrantCreate(BaseSchema):
    # Range is enforced by the orchestrator so the error shape matches other grant errors
    user_id: int = Field(..., description="Patient (grant subject) id")
    organization_id: int
    requesting_practitioner_id: Optional[int] = None
    time_window_hours: int
    access_scope: List[str] = Field(..., min_length=1)
    justification: str = Field(..., min_length=10, max_length=2000)
    metadata: GrantRequestMetadata = Field(default_factory=GrantRequestMetadata)
    device_info: Optional[Dict[str, Any]] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_defaults(cls, v):
        return GrantRequestMetadata() if v is None else v


class ScanGrantMetadata(BaseSchema):
    urgency_level: Literal["low", "normal", "high", "critical"] = "normal"


class ScanGrantRequest(BaseSchema):
    scanned_data: str = Field(..., min_length=1)
    organization_id: int
    requesting_practitioner_id: Optional[int] = None
    time_window_hours: int
    access_scope: List[str] = Field(..., min_length=1)
    justification: str = Field(..., min_length=10, max_length=2000)
    metadata: ScanGrantMetadata = Field(default_factory=ScanGrantMetadata)
    device_info: Optional[Dict[str, Any]] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_defaults(cls, v):
        return ScanGrantMetadata() if v is None else v


class GrantActionRequest(BaseSchema):
    action: GrantAction
    action_by: Optional[str] = None
    reason: str = Field(..., min_length=5, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None


class AuthorizationGrantResponse(BaseSchema):
    id: int
    user_id: int
    organization_id: int
    requesting_practitioner_id: Optional[int] = None
    status: GrantStatus
    effective_status: GrantStatus
    time_window_hours: int
    access_scope: List[str]
    justification: Optional[str] = None
    urgency_level: Optional[str] = None
    request_source: Optional[str] = None
    expires_at: datetime
    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: AuthorizationGrant, now: datetime) -> "AuthorizationGrantResponse":
        state = grants.GrantState.from_grant(grant)
        return cls(
            id=grant.id,
            user_id=grant.subject_id,
            organization_id=grant.organization_id,
            requesting_practitioner_id=grant.requesting_practitioner_id,
            status=grant.status,
            effective_status=grants.effective_status(state, now),
            time_window_hours=grant.time_window_hours,
            access_scope=grants.scope_list(grant),
            justification=grant.justification,
            urgency_level=grant.urgency_level,
            request_source=grant.request_source,
            expires_at=grant.expires_at,
            granted_at=grant.granted_at,
            revoked_at=grant.revoked_at,
            created_at=grant.created_at,
            updated_at=grant.updated_at,
        )


class GrantRequestResponse(BaseSchema):
    grant: AuthorizationGrantResponse
    qr_display_url: str
    scan_url: str
    access_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    stale_scan: bool = False


class GrantDetailResponse(BaseSchema):
    grant: AuthorizationGrantResponse
    allowed_actions: List[str]
    is_expired: bool
    is_active: bool


class GrantActionResponse(BaseSchema):
    grant: AuthorizationGrantResponse
    action: GrantAction
    previous_status: GrantStatus
    new_status: GrantStatus


class Pagination(BaseSchema):
    total: int
    limit: int
    offset: int
    has_more: bool


class GrantListResponse(BaseSchema):
    grants: List[AuthorizationGrantResponse]
    pagination: Pagination


class PermissionCheckResponse(BaseSchema):
    grant_id: int
    scope: str
    allowed: bool


# --- Prescription token Schemas ---

class MedicationInfo(BaseSchema):
    name: str = Field(..., min_length=1)
    dosage: str
    frequency: str


class PrescriptionTokenRequest(BaseSchema):
    encounter_id: str = Field(..., min_length=1)
    prescription_index: int = Field(..., ge=0)
    medication: MedicationInfo
    patient: Dict[str, Any]
    prescriber: Dict[str, Any]
    organization: Dict[str, Any]
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class PrescriptionTokenResponse(BaseSchema):
    token: str
    expires_at: datetime


class PrescriptionVerifyRequest(BaseSchema):
    token: str = Field(..., min_length=1)


class PrescriptionVerifyResponse(BaseSchema):
    valid: bool
    prescription: Dict[str, Any]


# --- Queue Schemas ---

class QueueProcessRequest(BaseSchema):
    batch_size: int = Field(default=10, ge=1, le=100)


class QueueProcessResponse(BaseSchema):
    processed: int
    succeeded: int
    failed: int
    errors: List[str]


class QueueCleanupRequest(BaseSchema):
    older_than_hours: int = Field(default=24, ge=1, le=24 * 90)


class QueueCleanupResponse(BaseSchema):
    deleted_count: int


class GrantSweepRequest(BaseSchema):
    reminder_window_hours: int = Field(default=2, ge=1, le=48)


class GrantSweepResponse(BaseSchema):
    expired: int
    reminded: int
