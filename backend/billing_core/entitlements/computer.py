"""
Entitlement Computer - merges plan defaults with tenant overrides.

Resolution order (deterministic):
    1. Plan defaults from the plan catalog  -> source=PLAN
    2. Enabled, unexpired tenant overrides  -> source=OVERRIDE, replacing
       the plan value for the same key

The snapshot also carries the active seat count and the tenant's current
entitlement version so consumers can cache it under that version.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from billing_core.entitlements.models import EntitlementItem, FeatureSource, ResolvedEntitlements
from billing_core.entitlements.plan_catalog import UNLIMITED_VALUE, get_plan
from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.errors import SubscriptionNotFoundError
from billing_core.models.entitlement_override import EntitlementOverride, FeatureType, UNLIMITED
from billing_core.models.membership import Membership, MembershipStatus
from billing_core.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

_ACCESS_STATUSES = tuple(s.value for s in SubscriptionStatus if s.grants_access)


def format_override_value(override: EntitlementOverride) -> str:
    """Render an override as the string value exposed by the API."""
    if override.feature_type == FeatureType.BOOLEAN.value:
        return "true" if override.enabled else "false"
    if override.limit_value is None:
        return "0"
    if override.limit_value == UNLIMITED:
        return UNLIMITED_VALUE
    return str(override.limit_value)


def merge_entitlements(
    plan_defaults: Dict[str, str],
    overrides: Iterable[EntitlementOverride],
) -> Dict[str, EntitlementItem]:
    """
    Overlay overrides on plan defaults.

    Plan defaults are copied, never mutated.
    """
    merged = {
        key: EntitlementItem(key=key, value=value, source=FeatureSource.PLAN.value)
        for key, value in plan_defaults.items()
    }
    for override in overrides:
        merged[override.feature_key] = EntitlementItem(
            key=override.feature_key,
            value=format_override_value(override),
            source=FeatureSource.OVERRIDE.value,
        )
    return merged


class EntitlementComputer:
    """Computes a tenant's resolved entitlements from the current store state."""

    def __init__(self, db_session: Session, ledger: Optional[EntitlementVersionLedger] = None):
        self.db = db_session
        self.ledger = ledger or EntitlementVersionLedger()

    def compute(self, tenant_id: str) -> ResolvedEntitlements:
        """
        Resolve entitlements for a tenant.

        Raises:
            SubscriptionNotFoundError: the tenant has no active or trialing subscription
            PlanNotFoundError: the subscription references a plan missing from the catalog
        """
        # Version first: a concurrent bump can then only file newer state under
        # an older version, never older state under the newer one.
        version = self.ledger.current_version(self.db, tenant_id)

        subscription = (
            self.db.query(Subscription)
            .filter(
                Subscription.tenant_id == tenant_id,
                Subscription.status.in_(_ACCESS_STATUSES),
            )
            .populate_existing()
            .first()
        )
        if subscription is None:
            raise SubscriptionNotFoundError(tenant_id)

        plan = get_plan(subscription.plan_enum.plan_code)
        items = merge_entitlements(dict(plan.entitlements), self._active_overrides(tenant_id))

        resolved = ResolvedEntitlements(
            tenant_id=tenant_id,
            plan_code=plan.code,
            status=subscription.status,
            seats_quantity=subscription.seats_quantity,
            active_seats=self.count_active_seats(tenant_id),
            entitlement_version=version,
            items=list(items.values()),
        )

        logger.debug(
            "Entitlements computed",
            extra={
                "tenant_id": tenant_id,
                "plan_code": plan.code,
                "entitlement_version": resolved.entitlement_version,
            },
        )
        return resolved

    def count_active_seats(self, tenant_id: str) -> int:
        return (
            self.db.query(func.count(Membership.id))
            .filter(
                Membership.tenant_id == tenant_id,
                Membership.status == MembershipStatus.ACTIVE.value,
            )
            .scalar()
        ) or 0

    def _active_overrides(self, tenant_id: str):
        now = datetime.now(timezone.utc)
        return (
            self.db.query(EntitlementOverride)
            .filter(
                EntitlementOverride.tenant_id == tenant_id,
                EntitlementOverride.enabled.is_(True),
                or_(
                    EntitlementOverride.expires_at.is_(None),
                    EntitlementOverride.expires_at > now,
                ),
            )
            .order_by(EntitlementOverride.feature_key)
            .all()
        )
