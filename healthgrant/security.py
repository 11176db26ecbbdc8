import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import logging
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import get_settings
from .permissions import Actor, ACTOR_PATIENT, ACTOR_PRACTITIONER, ACTOR_OPERATOR


security_logger = logging.getLogger("healthgrant.security")

bearer_scheme = HTTPBearer(auto_error=False)

ROLES = (ACTOR_PATIENT, ACTOR_PRACTITIONER, ACTOR_OPERATOR)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, decoded from the bearer JWT."""
    subject: str
    role: str
    patient_id: Optional[int] = None
    practitioner_id: Optional[int] = None

    @property
    def actor(self) -> Actor:
        if self.role == ACTOR_PATIENT:
            return Actor(actor_id=str(self.patient_id), actor_type=ACTOR_PATIENT)
        if self.role == ACTOR_PRACTITIONER:
            return Actor(actor_id=str(self.practitioner_id), actor_type=ACTOR_PRACTITIONER)
        return Actor(actor_id=self.subject, actor_type=self.role)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    settings = get_settings()
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": datetime.now(timezone.utc),
        "jti": secrets.token_urlsafe(16),
    })

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None

    if payload.get("type") != token_type:
        return None
    return payload


def principal_from_claims(claims: Dict[str, Any]) -> Optional[Principal]:
    role = claims.get("role")
    subject = claims.get("sub")
    if role not in ROLES or not subject:
        return None
    try:
        patient_id = int(claims["patient_id"]) if claims.get("patient_id") is not None else None
        practitioner_id = int(claims["practitioner_id"]) if claims.get("practitioner_id") is not None else None
    except (TypeError, ValueError):
        return None
    if role == ACTOR_PATIENT and patient_id is None:
        return None
    if role == ACTOR_PRACTITIONER and practitioner_id is None:
        return None
    return Principal(subject=str(subject), role=role, patient_id=patient_id, practitioner_id=practitioner_id)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    claims = verify_token(credentials.credentials)
    principal = principal_from_claims(claims) if claims else None
    if principal is None:
        security_logger.warning(f"Rejected bearer token on {request.url.path}")
        raise credentials_exception
    return principal


def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return principal

    return role_dependency


# Specific role dependencies
require_operator = require_role(ACTOR_OPERATOR)
require_practitioner = require_role(ACTOR_PRACTITIONER)
require_grant_party = require_role(ACTOR_PATIENT, ACTOR_PRACTITIONER)
