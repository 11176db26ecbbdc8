"""Capability tokens: patient identification QR codes, signed prescription
tokens and short-lived grant access tokens.

Prescription tokens are signed twice. An HMAC-SHA256 over the canonical JSON
of the payload is embedded as a ``signature`` block, and the whole thing is
wrapped in an HS256 JWT (issuer/audience/expiry) and base64-encoded so it can
be put in a QR code as a single opaque string.
"""
import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from io import BytesIO
from typing import Any, Callable, Dict, Optional

import qrcode
import qrcode.image.svg
from qrcode.exceptions import DataOverflowError
import structlog
from jose import jwt
from jose.exceptions import JWTError

from .config import Settings, get_settings
from .database import utcnow
from .errors import (
    QRCodeGenerationError,
    SignatureVerificationError,
    TokenExpiredError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

PATIENT_TOKEN_TYPE = "health_access_request"
PATIENT_TOKEN_VERSION = "1.0"
SIGNATURE_FIELD = "signature"
SIGNATURE_ALGORITHM = "HMAC-SHA256"
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "grant_access"

# Claims added by the JWT wrapper, never part of the signed payload
REGISTERED_CLAIMS = ("iss", "aud", "iat", "exp", "nbf", "jti")

# exp is checked against the codec clock, not wall time
CLOCK_CHECKED_EXPIRY = {"verify_exp": False}


@dataclass
class QRRenderOptions:
    box_size: int = 10
    margin: int = 2
    dark: str = "#000000"
    light: str = "#FFFFFF"


@dataclass
class ScannedPatientToken:
    digital_identifier: str
    version: str
    timestamp: datetime
    stale: bool = False


@dataclass
class AccessToken:
    token: str
    expires_at: datetime


def canonicalize(data: Any) -> str:
    """Deterministic JSON: keys sorted at every depth, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` allowed) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class CapabilityTokenCodec:
    """Issues and verifies every token the engine hands out.

    ``clock`` is injectable so expiry behaviour can be exercised without
    sleeping; it must return an aware UTC datetime.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock

    # ==================== Patient identification QR ====================

    def patient_token_payload(self, digital_identifier: str) -> str:
        if not digital_identifier or not str(digital_identifier).strip():
            raise ValidationError("digitalIdentifier is required")
        return json.dumps({
            "type": PATIENT_TOKEN_TYPE,
            "digitalIdentifier": str(digital_identifier),
            "version": PATIENT_TOKEN_VERSION,
            "timestamp": isoformat(self.clock()),
        })

    def issue_patient_token(self, digital_identifier: str, fmt: str = "png",
                            options: Optional[QRRenderOptions] = None) -> str:
        """Render the patient QR as a PNG data URL or as SVG markup."""
        payload = self.patient_token_payload(digital_identifier)
        return self.render_qr(payload, fmt=fmt, options=options)

    def render_qr(self, data: str, fmt: str = "png", options: Optional[QRRenderOptions] = None) -> str:
        options = options or QRRenderOptions()
        fmt = (fmt or "png").lower()
        if fmt not in ("png", "svg"):
            raise ValidationError("format must be 'png' or 'svg'", details={"format": fmt})

        try:
            qr = qrcode.QRCode(
                version=None,
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=options.box_size,
                border=options.margin,
            )
            qr.add_data(data)
            qr.make(fit=True)

            buffer = BytesIO()
            if fmt == "svg":
                qr.make_image(image_factory=qrcode.image.svg.SvgPathImage).save(buffer)
                return buffer.getvalue().decode("utf-8")

            qr_image = qr.make_image(fill_color=options.dark, back_color=options.light)
            qr_image.save(buffer, format="PNG")
            encoded = base64.b64encode(buffer.getvalue()).decode()
            return f"data:image/png;base64,{encoded}"
        except (ValueError, TypeError, OSError, DataOverflowError) as e:
            logger.error("qr_render_failed", format=fmt, error=str(e))
            raise QRCodeGenerationError() from e

    def validate_patient_token(self, raw: str) -> Optional[ScannedPatientToken]:
        """Parse a scanned patient QR payload.

        Returns ``None`` for anything malformed. Payloads older than the
        stale window are still returned, flagged ``stale``.
        """
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.info("patient_token_unparseable")
            return None
        if not isinstance(parsed, dict) or parsed.get("type") != PATIENT_TOKEN_TYPE:
            return None

        digital_identifier = parsed.get("digitalIdentifier")
        if not isinstance(digital_identifier, str) or not digital_identifier.strip():
            return None
        try:
            timestamp = parse_timestamp(parsed.get("timestamp"))
        except (TypeError, ValueError):
            return None

        age = self.clock() - timestamp
        stale = age > timedelta(hours=self.settings.patient_token_stale_hours)
        if stale:
            logger.warning("patient_token_stale", digital_identifier=digital_identifier,
                           age_hours=round(age.total_seconds() / 3600, 1))

        return ScannedPatientToken(
            digital_identifier=digital_identifier,
            version=str(parsed.get("version") or PATIENT_TOKEN_VERSION),
            timestamp=timestamp,
            stale=stale,
        )

    # ==================== Prescription tokens ====================

    def _hmac(self, payload: Dict[str, Any]) -> str:
        return hmac.new(
            self.settings.qr_signing_key.encode(),
            canonicalize(payload).encode(),
            hashlib.sha256,
        ).hexdigest()

    def issue_prescription_token(self, data: Dict[str, Any]) -> str:
        if not isinstance(data, dict):
            raise ValidationError("Prescription data must be an object")
        reserved = [key for key in (SIGNATURE_FIELD,) + REGISTERED_CLAIMS if key in data]
        if reserved:
            raise ValidationError("Prescription data uses reserved fields", details={"fields": reserved})
        try:
            parse_timestamp(data.get("expiresAt"))
        except (TypeError, ValueError):
            raise ValidationError("expiresAt must be an ISO-8601 timestamp")

        payload = dict(data)
        now = self.clock()
        try:
            signature = {
                "value": self._hmac(payload),
                "algorithm": SIGNATURE_ALGORITHM,
                "keyId": self.settings.qr_key_id,
                "issuedAt": isoformat(now),
            }
        except TypeError as e:
            raise ValidationError("Prescription data must be JSON serialisable") from e

        claims = dict(payload)
        claims[SIGNATURE_FIELD] = signature
        claims.update({
            "iss": self.settings.token_issuer,
            "aud": self.settings.token_audience,
            "iat": now,
            "exp": now + timedelta(days=self.settings.prescription_validity_days),
        })
        token = jwt.encode(claims, self.settings.prescription_token_secret, algorithm=JWT_ALGORITHM)
        logger.info("prescription_token_issued", key_id=self.settings.qr_key_id,
                    encounter_id=data.get("encounterId"))
        return base64.b64encode(token.encode()).decode()

    def verify_prescription_token(self, opaque: str) -> Optional[Dict[str, Any]]:
        """Verify a token produced by :meth:`issue_prescription_token`.

        Returns ``None`` when the input is not a token at all. Raises
        :class:`SignatureVerificationError` when it is a token that does not
        verify, and :class:`TokenExpiredError` when it verifies but is past
        its validity.
        """
        try:
            token = base64.b64decode(opaque, validate=True).decode("utf-8")
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except (TypeError, ValueError, binascii.Error, JWTError):
            logger.info("prescription_token_malformed")
            return None

        try:
            decoded = jwt.decode(
                token,
                self.settings.prescription_token_secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self.settings.token_issuer,
                audience=self.settings.token_audience,
                options=CLOCK_CHECKED_EXPIRY,
            )
        except JWTError as e:
            logger.warning("prescription_token_rejected", reason=str(e))
            raise SignatureVerificationError("Prescription token signature verification failed")
        if self._jwt_expired(decoded):
            logger.warning("prescription_token_expired", reason="jwt_exp")
            raise TokenExpiredError("Prescription token has expired")

        payload = {key: value for key, value in decoded.items()
                   if key != SIGNATURE_FIELD and key not in REGISTERED_CLAIMS}
        signature = decoded.get(SIGNATURE_FIELD)
        provided = signature.get("value") if isinstance(signature, dict) else None
        if not isinstance(provided, str) or not hmac.compare_digest(provided, self._hmac(payload)):
            logger.error("prescription_signature_mismatch", encounter_id=payload.get("encounterId"))
            raise SignatureVerificationError("Digital signature verification failed")

        try:
            expires_at = parse_timestamp(payload.get("expiresAt"))
        except (TypeError, ValueError):
            raise SignatureVerificationError("Prescription token carries no valid expiresAt")
        if expires_at < self.clock():
            logger.warning("prescription_token_expired", reason="expiresAt",
                           encounter_id=payload.get("encounterId"))
            raise TokenExpiredError("Prescription has expired")

        return payload

    # ==================== Grant access tokens ====================

    def issue_access_token(self, digital_identifier: str, grant_id: int,
                           ttl_seconds: Optional[int] = None) -> AccessToken:
        """Short-lived bearer token scoping exactly one grant."""
        ttl = self.settings.grant_access_token_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttlSeconds must be positive")
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl)
        claims = {
            "sub": str(digital_identifier),
            "grant_id": grant_id,
            "type": ACCESS_TOKEN_TYPE,
            "iss": self.settings.token_issuer,
            "aud": self.settings.access_token_audience,
            "iat": now,
            "exp": expires_at,
            "jti": secrets.token_urlsafe(16),
        }
        token = jwt.encode(claims, self.settings.qr_signing_key, algorithm=JWT_ALGORITHM)
        return AccessToken(token=token, expires_at=expires_at)

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self.settings.qr_signing_key,
                algorithms=[JWT_ALGORITHM],
                issuer=self.settings.token_issuer,
                audience=self.settings.access_token_audience,
                options=CLOCK_CHECKED_EXPIRY,
            )
        except JWTError:
            raise SignatureVerificationError("Invalid grant access token")
        if self._jwt_expired(claims):
            raise TokenExpiredError("Grant access token has expired")
        if claims.get("type") != ACCESS_TOKEN_TYPE or "grant_id" not in claims:
            raise SignatureVerificationError("Invalid grant access token")
        return claims

    def _jwt_expired(self, claims: Dict[str, Any]) -> bool:
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise SignatureVerificationError("Token carries no valid exp claim")
        return exp < self.clock().timestamp()

    # ==================== Display URLs ====================

    def qr_display_url(self, grant_id: int) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/qr/{grant_id}"

    def scan_url(self, grant_id: int) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/scan/{grant_id}"


@lru_cache()
def get_codec() -> CapabilityTokenCodec:
    """Shared codec for the API layer; tests override this dependency."""
    return CapabilityTokenCodec()
