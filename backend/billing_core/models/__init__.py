"""
Database models for the billing core.

Importing this package registers every table on Base.metadata.
"""

from billing_core.models.base import TimestampMixin, TenantScopedMixin, generate_uuid
from billing_core.models.inbound_event import InboundEvent, EventStatus
from billing_core.models.outbound_event import OutboundEvent
from billing_core.models.entitlement_version import EntitlementVersion
from billing_core.models.entitlement_override import (
    EntitlementOverride,
    FeatureType,
    UNLIMITED,
)
from billing_core.models.tenant import Tenant, TenantStatus
from billing_core.models.subscription import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from billing_core.models.membership import Membership, MembershipStatus
from billing_core.models.invoice import Invoice

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "generate_uuid",
    "InboundEvent",
    "EventStatus",
    "OutboundEvent",
    "EntitlementVersion",
    "EntitlementOverride",
    "FeatureType",
    "UNLIMITED",
    "Tenant",
    "TenantStatus",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "Membership",
    "MembershipStatus",
    "Invoice",
]
