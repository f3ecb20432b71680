"""
Tenant membership model. Active memberships occupy seats.
"""

import enum

from sqlalchemy import Column, String, UniqueConstraint

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class MembershipStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Membership(Base, TimestampMixin, TenantScopedMixin):
    __tablename__ = "memberships"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(String(255), nullable=False)

    role = Column(String(50), nullable=False, default="member")

    status = Column(
        String(20),
        nullable=False,
        default=MembershipStatus.ACTIVE.value,
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_memberships_tenant_user"),
    )
