"""
Entitlement override service.

Grants and revokes tenant-specific deviations from plan defaults. Overrides
are upserted on (tenant_id, feature_key); each effective change yields an
EntitlementsChanged event.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from billing_core.auth.claims import TenantContext
from billing_core.errors import MalformedInputError
from billing_core.events.domain import DomainEvent, EntitlementsChanged
from billing_core.models.entitlement_override import EntitlementOverride, FeatureType, UNLIMITED

logger = logging.getLogger(__name__)


@dataclass
class OverrideChange:
    override: Optional[EntitlementOverride]
    events: List[DomainEvent] = field(default_factory=list)


class OverrideService:
    def __init__(self, db_session: Session, ctx: TenantContext):
        if ctx is None:
            raise ValueError("TenantContext is required")
        self.db = db_session
        self.ctx = ctx

    def list_overrides(self) -> List[EntitlementOverride]:
        return (
            self.db.query(EntitlementOverride)
            .filter(EntitlementOverride.tenant_id == self.ctx.tenant_id)
            .order_by(EntitlementOverride.feature_key)
            .all()
        )

    def set_override(
        self,
        feature_key: str,
        feature_type: FeatureType,
        limit_value: Optional[int] = None,
        enabled: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> OverrideChange:
        """
        Create or replace the tenant's override for feature_key.

        Raises:
            MalformedInputError: empty key, or a LIMIT/QUOTA override without a
                value (use -1 for unlimited)
        """
        if not feature_key:
            raise MalformedInputError("feature_key is required")
        if feature_type in (FeatureType.LIMIT, FeatureType.QUOTA):
            if limit_value is None or limit_value < UNLIMITED:
                raise MalformedInputError(
                    f"{feature_type.value} override for {feature_key} needs limit_value >= -1"
                )

        override = (
            self.db.query(EntitlementOverride)
            .filter(
                EntitlementOverride.tenant_id == self.ctx.tenant_id,
                EntitlementOverride.feature_key == feature_key,
            )
            .first()
        )
        if override is None:
            override = EntitlementOverride(tenant_id=self.ctx.tenant_id, feature_key=feature_key)
            self.db.add(override)

        override.feature_type = feature_type.value
        override.limit_value = limit_value
        override.enabled = enabled
        override.override_metadata = dict(metadata or {}, set_by=self.ctx.user_id)
        override.expires_at = expires_at
        self.db.flush()

        logger.info(
            "Entitlement override set",
            extra={
                "tenant_id": self.ctx.tenant_id,
                "feature_key": feature_key,
                "feature_type": feature_type.value,
                "enabled": enabled,
                "actor": self.ctx.user_id,
            },
        )
        return OverrideChange(override=override, events=[self._event("override_set", feature_key)])

    def remove_override(self, feature_key: str) -> OverrideChange:
        override = (
            self.db.query(EntitlementOverride)
            .filter(
                EntitlementOverride.tenant_id == self.ctx.tenant_id,
                EntitlementOverride.feature_key == feature_key,
            )
            .first()
        )
        if override is None:
            return OverrideChange(override=None)

        self.db.delete(override)
        self.db.flush()

        logger.info(
            "Entitlement override removed",
            extra={"tenant_id": self.ctx.tenant_id, "feature_key": feature_key, "actor": self.ctx.user_id},
        )
        return OverrideChange(override=None, events=[self._event("override_removed", feature_key)])

    def _event(self, reason: str, feature_key: str) -> EntitlementsChanged:
        return EntitlementsChanged(
            tenant_id=self.ctx.tenant_id,
            reason=reason,
            details={"featureKey": feature_key},
        )
