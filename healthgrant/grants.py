"""Grant lifecycle state machine.

Everything here is pure: functions take a :class:`GrantState` snapshot and a
``now`` and return a new snapshot or a boolean. Persistence happens once, in
the orchestrator (``healthgrant.crud``).

    PENDING --approve--> ACTIVE --revoke--> REVOKED
    PENDING --deny-----> REVOKED

EXPIRED is derived whenever ``now > expires_at`` and suppresses every
permission check, whatever the stored status says.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .errors import GrantActionError, ValidationError
from .models import AuthorizationGrant, GrantAction, GrantStatus

MIN_TIME_WINDOW_HOURS = 1
MAX_TIME_WINDOW_HOURS = 168

# Inbound scope name -> AuthorizationGrant column
SCOPE_COLUMNS: Dict[str, str] = {
    "canViewMedicalHistory": "can_view_medical_history",
    "canViewPrescriptions": "can_view_prescriptions",
    "canCreateEncounters": "can_create_encounters",
    "canViewAuditLogs": "can_view_audit_logs",
}

DEFAULT_SCOPES = ("canViewMedicalHistory", "canViewPrescriptions")


@dataclass(frozen=True)
class GrantState:
    status: GrantStatus
    expires_at: datetime
    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: AuthorizationGrant) -> "GrantState":
        return cls(
            status=GrantStatus(grant.status),
            expires_at=grant.expires_at,
            granted_at=grant.granted_at,
            revoked_at=grant.revoked_at,
            deleted_at=grant.deleted_at,
        )

    def apply_to(self, grant: AuthorizationGrant) -> None:
        grant.status = self.status
        grant.granted_at = self.granted_at
        grant.revoked_at = self.revoked_at


def compute_expiry(created_at: datetime, time_window_hours: int) -> datetime:
    validate_time_window(time_window_hours)
    return created_at + timedelta(hours=time_window_hours)


def validate_time_window(time_window_hours: int) -> None:
    if isinstance(time_window_hours, bool) or not isinstance(time_window_hours, int):
        raise ValidationError("timeWindowHours must be an integer")
    if not MIN_TIME_WINDOW_HOURS <= time_window_hours <= MAX_TIME_WINDOW_HOURS:
        raise ValidationError(
            f"timeWindowHours must be between {MIN_TIME_WINDOW_HOURS} and {MAX_TIME_WINDOW_HOURS}",
            details={"timeWindowHours": time_window_hours},
        )


def is_expired(state: GrantState, now: datetime) -> bool:
    return now > state.expires_at


def effective_status(state: GrantState, now: datetime) -> GrantStatus:
    if state.status in (GrantStatus.PENDING, GrantStatus.ACTIVE) and is_expired(state, now):
        return GrantStatus.EXPIRED
    return state.status


def is_active(state: GrantState, now: datetime) -> bool:
    return state.deleted_at is None and effective_status(state, now) == GrantStatus.ACTIVE


def allowed_actions(state: GrantState, now: datetime) -> List[str]:
    """Actions ``transition`` would accept right now, in a stable order."""
    if state.status == GrantStatus.PENDING:
        actions = []
        if not is_expired(state, now):
            actions.append(GrantAction.approve.value)
        actions.append(GrantAction.deny.value)
        return actions
    if state.status == GrantStatus.ACTIVE:
        return [GrantAction.revoke.value]
    return []


def transition(state: GrantState, action, now: datetime) -> GrantState:
    """Apply ``action`` to ``state``; raise GrantActionError if not allowed."""
    try:
        action = GrantAction(action)
    except ValueError:
        raise GrantActionError(
            f"Unknown action '{action}'",
            current_status=state.status.value,
            allowed_actions=allowed_actions(state, now),
        )

    if action == GrantAction.approve and state.status == GrantStatus.PENDING:
        if is_expired(state, now):
            raise GrantActionError(
                "Cannot approve an expired grant",
                current_status=GrantStatus.EXPIRED.value,
                allowed_actions=allowed_actions(state, now),
            )
        return replace(state, status=GrantStatus.ACTIVE, granted_at=now)

    if action == GrantAction.deny and state.status == GrantStatus.PENDING:
        return replace(state, status=GrantStatus.REVOKED)

    if action == GrantAction.revoke and state.status == GrantStatus.ACTIVE:
        return replace(state, status=GrantStatus.REVOKED, revoked_at=now)

    raise GrantActionError(
        f"Cannot {action.value} grant with status {state.status.value}",
        current_status=state.status.value,
        allowed_actions=allowed_actions(state, now),
    )


def scope_flags(scopes: Optional[Iterable[str]]) -> Dict[str, bool]:
    """Column flags for a scope list; ``None`` means the default scope."""
    selected = set(DEFAULT_SCOPES if scopes is None else scopes)
    unknown = selected - set(SCOPE_COLUMNS)
    if unknown:
        raise ValidationError(
            "Unknown access scope",
            details={"unknownScopes": sorted(unknown), "validScopes": list(SCOPE_COLUMNS)},
        )
    return {column: name in selected for name, column in SCOPE_COLUMNS.items()}


def scope_list(grant: AuthorizationGrant) -> List[str]:
    return [name for name, column in SCOPE_COLUMNS.items() if getattr(grant, column, False)]


def has_permission(grant: Optional[AuthorizationGrant], scope: str, now: datetime) -> bool:
    """Never raises; anything unexpected degrades to deny."""
    if grant is None:
        return False
    column = SCOPE_COLUMNS.get(scope)
    if column is None:
        return False
    try:
        return is_active(GrantState.from_grant(grant), now) and bool(getattr(grant, column, False))
    except (TypeError, ValueError):
        return False
