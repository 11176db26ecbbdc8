# healthgrant/permissions.py - who may request and act on grants
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from . import models

# Access scope -> practitioner flag needed to request it
SCOPE_PERMISSIONS = {
    "canViewMedicalHistory": "can_access_patient_records",
    "canViewPrescriptions": "can_access_patient_records",
    "canCreateEncounters": "can_modify_patient_records",
    "canViewAuditLogs": "can_view_audit_logs",
}

# Grant action -> practitioner flag needed to perform it
ACTION_PERMISSIONS = {
    models.GrantAction.approve.value: "can_approve_authorization_grants",
    models.GrantAction.deny.value: "can_approve_authorization_grants",
    models.GrantAction.revoke.value: "can_revoke_authorization_grants",
}

ACTOR_PATIENT = "patient"
ACTOR_PRACTITIONER = "practitioner"
ACTOR_OPERATOR = "operator"


@dataclass(frozen=True)
class Actor:
    """Whoever is driving a grant operation, as taken from the API principal."""
    actor_id: str
    actor_type: str = ACTOR_PRACTITIONER


@dataclass
class PermissionCheck:
    allowed: bool
    reason: Optional[str] = None
    missing: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.allowed


def _is_member(practitioner: Optional[models.Practitioner], organization_id: int) -> bool:
    return (
        practitioner is not None
        and bool(practitioner.is_active)
        and practitioner.organization_id == organization_id
    )


def validate_access_scopes(practitioner: models.Practitioner, scopes: Iterable[str]) -> PermissionCheck:
    missing = []
    invalid = []
    for scope in scopes:
        flag = SCOPE_PERMISSIONS.get(scope)
        if flag is None:
            invalid.append(scope)
        elif not getattr(practitioner, flag, False):
            missing.append(scope)
    if invalid:
        return PermissionCheck(False, f"Invalid access scopes: {', '.join(invalid)}", invalid)
    if missing:
        return PermissionCheck(False, "Practitioner lacks permission for the requested scopes", missing)
    return PermissionCheck(True)


def can_request_grant(practitioner: Optional[models.Practitioner], organization_id: int,
                      scopes: Iterable[str]) -> PermissionCheck:
    if not _is_member(practitioner, organization_id):
        return PermissionCheck(False, "Practitioner is not an active member of the organization")
    if not practitioner.can_request_authorization_grants:
        return PermissionCheck(False, "Practitioner cannot request authorization grants",
                               ["can_request_authorization_grants"])
    return validate_access_scopes(practitioner, scopes)


def can_auto_approve(practitioner: Optional[models.Practitioner], organization_id: int) -> PermissionCheck:
    if not _is_member(practitioner, organization_id):
        return PermissionCheck(False, "Auto-approve requires a requesting practitioner of the organization")
    if not practitioner.can_approve_authorization_grants:
        return PermissionCheck(False, "Practitioner cannot approve authorization grants",
                               ["can_approve_authorization_grants"])
    return PermissionCheck(True)


def can_perform_action(actor: Actor, grant: models.AuthorizationGrant, action: str,
                       practitioner: Optional[models.Practitioner] = None) -> PermissionCheck:
    """Patients may act on their own grants; practitioners need the action flag
    at the grant's organization. Operators never act on grants."""
    flag = ACTION_PERMISSIONS.get(action)
    if flag is None:
        return PermissionCheck(False, f"Invalid grant action: {action}")

    if actor.actor_type == ACTOR_PATIENT:
        if str(grant.subject_id) == str(actor.actor_id):
            return PermissionCheck(True)
        return PermissionCheck(False, "Patients may only act on their own grants")

    if actor.actor_type == ACTOR_PRACTITIONER:
        if not _is_member(practitioner, grant.organization_id):
            return PermissionCheck(False, "Practitioner is not an active member of the grant's organization")
        if not getattr(practitioner, flag, False):
            return PermissionCheck(False, f"Practitioner lacks permission to {action} authorization grants", [flag])
        return PermissionCheck(True)

    return PermissionCheck(False, f"Actor type '{actor.actor_type}' cannot act on grants")
