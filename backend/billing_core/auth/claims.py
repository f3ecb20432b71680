"""
Session token claims and the explicit tenant context.

Session issuance is owned by the identity layer; this module defines the
claim contract it must honour and the helpers both sides use:

JWT Claims Used:
- sub: user id
- tid: tenant id the session is scoped to
- roles: role names within the tenant
- ent_v: tenant entitlement version read from the ledger at issuance
- iat / exp: issued-at and expiry timestamps

A consumer detects stale entitlements by comparing ent_v to the live ledger
value. When they differ, the session must be refreshed, which re-reads the
ledger and re-issues the token.

TenantContext is passed explicitly to every tenant-scoped call. There is no
thread-local or request-global tenant state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import jwt
from jwt.exceptions import InvalidTokenError
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from billing_core.entitlements.version_ledger import EntitlementVersionLedger

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SYSTEM_USER_ID = "system"


class SessionTokenError(Exception):
    """Token missing, malformed, expired or signed with the wrong key."""


class SessionClaims(BaseModel):
    """Pydantic model for session JWT claims."""

    sub: str = Field(..., description="User ID")
    tid: str = Field(..., min_length=1, description="Tenant ID")
    roles: List[str] = Field(default_factory=list)
    ent_v: int = Field(..., ge=1, description="Entitlement version at issuance")
    iat: int
    exp: int


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable tenant context for one request or one processing step.

    entitlement_version is the version the caller last saw (from ent_v), or
    None for internal callers such as webhook handlers.
    """

    tenant_id: str
    user_id: str = SYSTEM_USER_ID
    roles: Tuple[str, ...] = field(default_factory=tuple)
    entitlement_version: Optional[int] = None

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")

    @classmethod
    def system(cls, tenant_id: str) -> "TenantContext":
        """Context for work done on behalf of the platform, not a user."""
        return cls(tenant_id=tenant_id, user_id=SYSTEM_USER_ID, roles=("system",))

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "TenantContext":
        return cls(
            tenant_id=claims.tid,
            user_id=claims.sub,
            roles=tuple(claims.roles),
            entitlement_version=claims.ent_v,
        )


def issue_session_token(
    db: Session,
    ledger: EntitlementVersionLedger,
    secret: str,
    tenant_id: str,
    user_id: str,
    roles: Optional[List[str]] = None,
    ttl_seconds: int = 3600,
    now: Optional[datetime] = None,
) -> str:
    """Sign a session token carrying the tenant's live entitlement version."""
    if not secret:
        raise ValueError("JWT secret is not configured")

    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "tid": tenant_id,
        "roles": list(roles or []),
        "ent_v": ledger.current_version(db, tenant_id),
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def decode_session_token(token: str, secret: str) -> TenantContext:
    """
    Verify a session token and build the caller's TenantContext.

    Raises:
        SessionTokenError: on any signature, expiry or claim problem
    """
    if not secret:
        raise SessionTokenError("JWT secret is not configured")

    try:
        raw_claims = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "tid", "ent_v", "exp", "iat"]},
        )
        claims = SessionClaims(**raw_claims)
    except InvalidTokenError as e:
        raise SessionTokenError(f"Invalid session token: {e}") from e
    except ValidationError as e:
        raise SessionTokenError(f"Invalid session claims: {e.error_count()} error(s)") from e

    return TenantContext.from_claims(claims)


def is_stale(db: Session, ledger: EntitlementVersionLedger, ctx: TenantContext) -> bool:
    """True when the ledger has moved past the version embedded in the token."""
    if ctx.entitlement_version is None:
        return True
    current = ledger.current_version(db, ctx.tenant_id)
    if current != ctx.entitlement_version:
        logger.info(
            "Session entitlements are stale",
            extra={
                "tenant_id": ctx.tenant_id,
                "token_version": ctx.entitlement_version,
                "current_version": current,
            },
        )
        return True
    return False
