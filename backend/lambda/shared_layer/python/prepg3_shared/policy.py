"""prepg3_shared.policy — Role hierarchy and capability checks.

Capabilities are data: each maps to a minimum role and an ownership mode.
``check`` is a pure decision function evaluated in a fixed order:

    1. the caller must be authenticated
    2. the caller's highest role must meet the capability's minimum
    3. SelfOnly: below Admin, the caller must own the resource
    4. ExplicitConfirmationRequired: the caller must pass ``confirmed=True``
"""

from __future__ import annotations

import enum
from typing import Any, Dict, NamedTuple, Optional

from .claims import ROLE_NAMES, Claims, Role
from .errors import AuthenticationError, AuthorizationError, ConfirmationRequiredError


class Ownership(enum.Enum):
    NONE = "None"
    SELF_ONLY = "SelfOnly"
    EXPLICIT_CONFIRMATION_REQUIRED = "ExplicitConfirmationRequired"


class Rule(NamedTuple):
    min_role: Role
    ownership: Ownership = Ownership.NONE


# Roles at or above this level bypass SelfOnly ownership.
OWNERSHIP_BYPASS_ROLE = Role.ADMIN

CAPABILITIES: Dict[str, Rule] = {
    # Documents
    "ViewDocument": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "ViewDocumentHistory": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "UploadDocument": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "ReplaceDocument": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "WithdrawDocument": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "VerifyDocument": Rule(Role.COMPLIANCE),
    "ViewAllDocuments": Rule(Role.COMPLIANCE),
    "DeleteDocumentPermanently": Rule(Role.SUPER_ADMIN, Ownership.EXPLICIT_CONFIRMATION_REQUIRED),
    # Investors
    "CreateInvestor": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "ViewInvestor": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "UpdateInvestor": Rule(Role.INVESTOR, Ownership.SELF_ONLY),
    "ChangeInvestorEmail": Rule(Role.ADMIN),
    "ViewAllInvestors": Rule(Role.COMPLIANCE),
    "ApproveKYC": Rule(Role.COMPLIANCE),
    "RejectKYC": Rule(Role.COMPLIANCE),
    # Properties
    "ViewProperty": Rule(Role.INVESTOR),
    "CreateProperty": Rule(Role.ADMIN),
    "UpdateProperty": Rule(Role.PROPERTY_MANAGER),
    "UpdatePropertyListingStatus": Rule(Role.ADMIN),
    # Administration
    "ManageUsers": Rule(Role.ADMIN),
    "ManageRoles": Rule(Role.SUPER_ADMIN),
    "AccessAuditLogs": Rule(Role.ADMIN),
}


class Authorized(NamedTuple):
    capability: str
    subject_id: str
    role: Role


def check(
    capability: str,
    claims: Optional[Claims],
    resource_owner_id: Optional[str] = None,
    confirmed: bool = False,
) -> Authorized:
    """Authorize ``claims`` for ``capability``; raises on denial."""
    if claims is None or not claims.subject_id:
        raise AuthenticationError("Not authenticated")

    rule = CAPABILITIES.get(capability)
    if rule is None:
        raise AuthorizationError(f"Unknown capability: {capability}")

    role = claims.highest_role
    if role is None or role < rule.min_role:
        raise AuthorizationError(f"{ROLE_NAMES[rule.min_role]} access required")

    if rule.ownership is Ownership.SELF_ONLY and role < OWNERSHIP_BYPASS_ROLE:
        if not claims.owner_id or claims.owner_id != resource_owner_id:
            raise AuthorizationError("You can only access your own resources")

    if rule.ownership is Ownership.EXPLICIT_CONFIRMATION_REQUIRED and confirmed is not True:
        raise ConfirmationRequiredError()

    return Authorized(capability, claims.subject_id, role)


def permission_summary(claims: Claims) -> Dict[str, Any]:
    """Role-level view of every capability for the caller (ownership ignored)."""
    role = claims.highest_role
    return {
        "userId": claims.subject_id,
        "email": claims.email or "",
        "role": ROLE_NAMES[role] if role is not None else "Unknown",
        "groups": list(claims.groups),
        "permissions": {
            name: role is not None and role >= rule.min_role
            for name, rule in sorted(CAPABILITIES.items())
        },
    }
