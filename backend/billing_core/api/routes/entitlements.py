"""
Entitlement and plan read endpoints.

GET /api/plans is public. The entitlement endpoints require a session token;
the tenant comes from the token's tid claim.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from billing_core.api.dependencies import get_tenant_context
from billing_core.api.schemas import EntitlementsResponse, EntitlementVersionResponse, PlanResponse
from billing_core.auth.claims import TenantContext
from billing_core.database.session import get_db_session
from billing_core.entitlements.cache import EntitlementCache, get_entitlement_cache
from billing_core.entitlements.plan_catalog import all_plans
from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.errors import UnknownReferenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["entitlements"])


@router.get("/plans", response_model=dict[str, PlanResponse])
async def list_plans():
    return {code: plan.to_dict() for code, plan in all_plans().items()}


def _resolve(db: Session, cache: EntitlementCache, tenant_id: str) -> dict:
    try:
        resolved = cache.get_entitlements(db, tenant_id)
    except UnknownReferenceError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    finally:
        # Reads may have created the version row lazily.
        db.commit()
    return resolved.to_dict()


@router.get("/tenants/{tenant_id}/entitlements", response_model=EntitlementsResponse)
def get_tenant_entitlements(
    tenant_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
    cache: EntitlementCache = Depends(get_entitlement_cache),
):
    if tenant_id != ctx.tenant_id:
        logger.warning(
            "Cross-tenant entitlement read denied",
            extra={"tenant_id": ctx.tenant_id, "requested_tenant_id": tenant_id, "user_id": ctx.user_id},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access to tenant denied")
    return _resolve(db, cache, tenant_id)


@router.get("/entitlements/me", response_model=EntitlementsResponse)
def get_my_entitlements(
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
    cache: EntitlementCache = Depends(get_entitlement_cache),
):
    return _resolve(db, cache, ctx.tenant_id)


@router.get("/entitlements/version", response_model=EntitlementVersionResponse)
def get_entitlement_version(
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
):
    """Lets a client decide whether to refresh its session."""
    current = EntitlementVersionLedger().current_version(db, ctx.tenant_id)
    db.commit()
    return EntitlementVersionResponse(
        tenantId=ctx.tenant_id,
        entitlementVersion=current,
        tokenVersion=ctx.entitlement_version,
        stale=ctx.entitlement_version != current,
    )
