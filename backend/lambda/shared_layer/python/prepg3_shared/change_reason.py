"""prepg3_shared.change_reason — Reasons attached to record versions.

Changes to compliance-critical fields need a human reason. Other changes get
a generated one so every version in a chain explains itself.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from . import config
from .errors import ValidationError

CRITICAL_FIELDS = frozenset(
    {
        "kycStatus",
        "amlCheckStatus",
        "sanctionsCheckStatus",
        "accountStatus",
        "email",
        "bankAccounts",
        "isPEP",
    }
)

# First matching field wins.
_REASON_PREFIXES = (
    ("kycStatus", "KYC Status Change: "),
    ("accountStatus", "Account Status Change: "),
    ("email", "Email Change: "),
)

_PROFILE_FIELDS = {"phone", "mobilePhone", "address"}


def validate_reason(reason: Optional[str], label: str = "Change reason") -> str:
    text = (reason or "").strip()
    if len(text) < config.MIN_REASON_LENGTH:
        raise ValidationError(f"{label} must be at least {config.MIN_REASON_LENGTH} characters")
    if len(text) > config.MAX_REASON_LENGTH:
        raise ValidationError(f"{label} must be less than {config.MAX_REASON_LENGTH} characters")
    return text


def requires_reason(changed_fields: Sequence[str]) -> bool:
    return any(f in CRITICAL_FIELDS for f in changed_fields)


def _auto_reason(changed_fields: Sequence[str], context: Dict[str, Any]) -> str:
    fields = set(changed_fields)
    if "totalInvested" in fields and context.get("investmentId"):
        return f"Investment {context['investmentId']} recorded - portfolio updated"
    if "totalROI" in fields:
        return "Portfolio ROI recalculated"
    if fields & _PROFILE_FIELDS:
        return "Profile information updated by investor"
    if "communicationPreferences" in fields:
        return "Communication preferences updated"
    return f"Updated: {', '.join(changed_fields)}"


def get_change_reason(
    changed_fields: Sequence[str],
    user_reason: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> str:
    """Reason for a version changing ``changed_fields``.

    Raises ValidationError when a critical field changed without a reason or
    the supplied reason is out of bounds.
    """
    if not user_reason or not user_reason.strip():
        if requires_reason(changed_fields):
            raise ValidationError(
                f"A reason is required when updating: {', '.join(changed_fields)}",
                fields=list(changed_fields),
            )
        return _auto_reason(changed_fields, context or {})

    text = validate_reason(user_reason)
    for field_name, prefix in _REASON_PREFIXES:
        if field_name in changed_fields:
            return prefix + text
    return text
