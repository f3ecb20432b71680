"""
Per-tenant entitlement version.

A monotonic counter used purely as a cache-invalidation token. The row is
only ever written through EntitlementVersionLedger.
"""

from sqlalchemy import Column, String, BigInteger, DateTime

from billing_core.db_base import Base
from billing_core.models.base import generate_uuid, utcnow


class EntitlementVersion(Base):
    __tablename__ = "entitlement_versions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    tenant_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Exactly one version row per tenant"
    )

    version = Column(
        BigInteger,
        nullable=False,
        default=1,
        comment="Starts at 1 and never decreases"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<EntitlementVersion(tenant_id={self.tenant_id}, version={self.version})>"
