"""prepg3_shared.claims — Caller identity from Cognito claims.

Resolver events normally arrive with claims already verified by the API layer
(``identity.claims``). Direct invocations may instead carry the raw ID token
in an ``Authorization: Bearer`` header or the id-token cookie; that token is
verified as an RS256 Cognito JWT against the user pool JWKS.

Requires environment variables (token path only):
    COGNITO_USER_POOL_ID   — e.g. eu-west-2_AbCdEf123
    COGNITO_CLIENT_ID      — app client id (token audience)
"""

from __future__ import annotations

import enum
import json
import logging
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from urllib.parse import unquote

import jwt
from jwt.algorithms import RSAAlgorithm

from . import config
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

GROUPS_CLAIM = "cognito:groups"
OWNER_CLAIM = "custom:investorId"


class Role(enum.IntEnum):
    """Platform roles in ascending privilege."""

    INVESTOR = 1
    PROPERTY_MANAGER = 2
    COMPLIANCE = 3
    ADMIN = 4
    SUPER_ADMIN = 5


# Cognito group name -> role. Legacy investor groups collapse onto Investor.
_GROUP_ROLES: Dict[str, Role] = {
    "Investor": Role.INVESTOR,
    "Investors": Role.INVESTOR,
    "VerifiedInvestors": Role.INVESTOR,
    "PropertyManager": Role.PROPERTY_MANAGER,
    "Compliance": Role.COMPLIANCE,
    "Admin": Role.ADMIN,
    "SuperAdmin": Role.SUPER_ADMIN,
}

ROLE_NAMES: Dict[Role, str] = {
    Role.INVESTOR: "Investor",
    Role.PROPERTY_MANAGER: "PropertyManager",
    Role.COMPLIANCE: "Compliance",
    Role.ADMIN: "Admin",
    Role.SUPER_ADMIN: "SuperAdmin",
}


@dataclass(frozen=True)
class Claims:
    subject_id: str
    roles: FrozenSet[Role] = field(default_factory=frozenset)
    owner_id: Optional[str] = None
    email: Optional[str] = None
    groups: tuple = ()

    @property
    def highest_role(self) -> Optional[Role]:
        return max(self.roles) if self.roles else None

    @property
    def actor(self) -> str:
        """Attribution string written to ``updatedBy``."""
        return self.email or self.subject_id


def _groups_from(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(g).strip() for g in parsed if str(g).strip()]
        return [part.strip() for part in text.replace(" ", ",").split(",") if part.strip()]
    if isinstance(raw, Iterable):
        return [str(g).strip() for g in raw if str(g).strip()]
    return []


def decode(raw_claims: Optional[Dict[str, Any]]) -> Claims:
    """Normalize a decoded claims map. Raises AuthenticationError without a subject."""
    raw_claims = raw_claims or {}
    subject = str(raw_claims.get("sub") or raw_claims.get("username") or "").strip()
    if not subject:
        raise AuthenticationError("Not authenticated")

    groups = _groups_from(raw_claims.get(GROUPS_CLAIM))
    roles = frozenset(_GROUP_ROLES[g] for g in groups if g in _GROUP_ROLES)
    owner_id = str(raw_claims.get(OWNER_CLAIM) or "").strip() or None
    email = str(raw_claims.get("email") or "").strip() or None
    return Claims(
        subject_id=subject,
        roles=roles,
        owner_id=owner_id,
        email=email,
        groups=tuple(groups),
    )


# ---------------------------------------------------------------------------
# Raw token path
# ---------------------------------------------------------------------------

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _get_jwks() -> Dict[str, Any]:
    """Fetch (and cache) Cognito User Pool JWKS."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache

    if not config.COGNITO_USER_POOL_ID:
        raise AuthenticationError("Token verification is not configured")

    region = config.COGNITO_USER_POOL_ID.split("_")[0]
    url = (
        f"https://cognito-idp.{region}.amazonaws.com/"
        f"{config.COGNITO_USER_POOL_ID}/.well-known/jwks.json"
    )
    with urllib.request.urlopen(url, timeout=5) as resp:
        data = json.loads(resp.read())

    _jwks_cache = {
        key_data["kid"]: RSAAlgorithm.from_jwk(json.dumps(key_data))
        for key_data in data.get("keys", [])
    }
    _jwks_fetched_at = now
    return _jwks_cache


def verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito ID token (RS256). Returns the decoded claims map."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token") from exc

    alg = header.get("alg", "RS256")
    if alg != "RS256":
        raise AuthenticationError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise AuthenticationError("Token key ID not found")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=config.COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired. Please sign in again.") from exc
    except jwt.InvalidAudienceError as exc:
        raise AuthenticationError("Token audience mismatch.") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Token validation failed") from exc


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Bearer token from Authorization, else the id-token cookie."""
    headers = event.get("headers") or {}
    auth_header = headers.get("authorization") or headers.get("Authorization") or ""
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    cookie_parts: List[str] = []
    cookie_header = headers.get("cookie") or headers.get("Cookie") or ""
    if cookie_header:
        cookie_parts.extend(part.strip() for part in cookie_header.split(";") if part.strip())
    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, list):
        cookie_parts.extend(p.strip() for p in event_cookies if isinstance(p, str) and p.strip())

    prefix = f"{config.ID_TOKEN_COOKIE}="
    for part in cookie_parts:
        if part.startswith(prefix):
            return unquote(part[len(prefix):])
    return None


def from_event(event: Dict[str, Any]) -> Claims:
    """Claims for a resolver event; verifies a raw token when no claims are attached."""
    identity = event.get("identity") or {}
    raw_claims = identity.get("claims")
    if raw_claims:
        if not raw_claims.get("sub") and identity.get("username"):
            raw_claims = {**raw_claims, "username": identity["username"]}
        return decode(raw_claims)

    token = _extract_token(event)
    if not token:
        raise AuthenticationError()
    return decode(verify_token(token))
