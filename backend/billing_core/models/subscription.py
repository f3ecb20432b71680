"""
Subscription model.

Each tenant has at most one subscription row. Concurrent writers are
serialised by an explicit compare-and-swap on lock_version, see
SubscriptionService.
"""

import enum

from sqlalchemy import Column, String, Integer, BigInteger, UniqueConstraint

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class SubscriptionPlan(str, enum.Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"

    @property
    def plan_code(self) -> str:
        """Key of this plan in the plan catalog."""
        return self.value.lower()

    @classmethod
    def from_code(cls, code: str) -> "SubscriptionPlan":
        return cls(code.strip().upper())


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def grants_access(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    plan = Column(
        String(20),
        nullable=False,
        comment="SubscriptionPlan value"
    )

    status = Column(
        String(20),
        nullable=False,
        comment="SubscriptionStatus value"
    )

    seats_quantity = Column(
        Integer,
        nullable=True,
        comment="Purchased seats; NULL means unlimited"
    )

    provider_subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Subscription id at the billing provider"
    )

    lock_version = Column(
        BigInteger,
        nullable=False,
        default=1,
        comment="Row version for compare-and-swap updates"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_subscriptions_tenant"),
        {"comment": "One subscription per tenant"},
    )

    @property
    def plan_enum(self) -> SubscriptionPlan:
        return SubscriptionPlan(self.plan)

