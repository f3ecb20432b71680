"""
Tenant-specific entitlement overrides.

An override replaces a plan default for one feature key of one tenant.
limit_value uses -1 as the sentinel for "unlimited".
"""

import enum

from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    DateTime,
    JSON,
    UniqueConstraint,
)

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, TenantScopedMixin, generate_uuid

UNLIMITED = -1


class FeatureType(str, enum.Enum):
    """How an override value is interpreted and rendered."""
    BOOLEAN = "BOOLEAN"
    LIMIT = "LIMIT"
    QUOTA = "QUOTA"


class EntitlementOverride(Base, TimestampMixin, TenantScopedMixin):
    __tablename__ = "entitlement_overrides"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    feature_key = Column(
        String(255),
        nullable=False,
        comment="Entitlement key, e.g. limits.projects"
    )

    feature_type = Column(
        String(20),
        nullable=False,
        default=FeatureType.BOOLEAN.value,
        comment="BOOLEAN, LIMIT or QUOTA"
    )

    limit_value = Column(
        BigInteger,
        nullable=True,
        comment="Numeric value for LIMIT/QUOTA, -1 means unlimited"
    )

    enabled = Column(Boolean, nullable=False, default=True)

    override_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
        comment="Free-form context, e.g. who granted the override and why"
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Overrides past this time are ignored"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_key", name="uq_entitlement_overrides_tenant_feature"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntitlementOverride(tenant_id={self.tenant_id}, "
            f"feature_key={self.feature_key}, enabled={self.enabled})>"
        )
