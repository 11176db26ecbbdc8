"""Typed errors raised by the orchestrator and the token codec.

The API layer turns any :class:`HealthGrantError` into a JSON response using
``status_code`` and :meth:`HealthGrantError.to_dict`.
"""
from typing import Any, Dict, List, Optional


class HealthGrantError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(HealthGrantError):
    """Malformed input, raised before any mutation."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFoundError(HealthGrantError):
    status_code = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(HealthGrantError):
    status_code = 409

    def __init__(self, message: str, existing_grant_id: Optional[int] = None):
        super().__init__(message)
        self.existing_grant_id = existing_grant_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.existing_grant_id is not None:
            body["existingGrantId"] = self.existing_grant_id
        return body


class AuthorizationError(HealthGrantError):
    status_code = 403


class GrantActionError(HealthGrantError):
    """Transition not allowed from the grant's current status."""
    status_code = 400

    def __init__(self, message: str, current_status: str, allowed_actions: List[str]):
        super().__init__(message)
        self.current_status = current_status
        self.allowed_actions = list(allowed_actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "currentStatus": self.current_status,
            "allowedActions": self.allowed_actions,
        }


class SignatureVerificationError(HealthGrantError):
    """Token signature, issuer or audience did not verify. Remediation: re-sign."""
    status_code = 401


class TokenExpiredError(HealthGrantError):
    """Token is authentic but past its validity. Remediation: re-issue."""
    status_code = 410


class QRCodeGenerationError(HealthGrantError):
    status_code = 500

    def __init__(self, message: str = "Failed to generate QR code"):
        super().__init__(message)


class QueueDeliveryError(HealthGrantError):
    """A single delivery attempt failed; handled inside the queue."""
    status_code = 502
