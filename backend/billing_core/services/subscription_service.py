"""
Subscription service.

Applies provider-reported subscription state to the tenant's single
subscription row. Concurrent writers are serialised with an explicit
compare-and-swap on Subscription.lock_version:

    UPDATE subscriptions SET ..., lock_version = lock_version + 1
     WHERE id = :id AND lock_version = :expected

A zero row count means another writer got in between our read and our
write; the row is re-read and the update retried a bounded number of times.

The service never bumps the entitlement version or writes outbound events
itself. It returns EntitlementsChanged events for the caller to dispatch
inside the same transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from billing_core.auth.claims import TenantContext
from billing_core.database.upsert import insert_ignoring_conflict
from billing_core.entitlements.plan_catalog import get_plan
from billing_core.errors import ConcurrentUpdateError, MalformedInputError
from billing_core.events.domain import DomainEvent, EntitlementsChanged
from billing_core.models.base import generate_uuid, utcnow
from billing_core.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


@dataclass
class SubscriptionChange:
    subscription: Subscription
    created: bool = False
    previous_plan: Optional[str] = None
    previous_status: Optional[str] = None
    events: List[DomainEvent] = field(default_factory=list)


class SubscriptionService:
    def __init__(self, db_session: Session, max_attempts: int = MAX_CAS_ATTEMPTS):
        self.db = db_session
        self.max_attempts = max_attempts

    def get_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.tenant_id == tenant_id)
            .populate_existing()
            .first()
        )

    def find_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .first()
        )

    def apply_provider_update(
        self,
        ctx: TenantContext,
        plan: Optional[SubscriptionPlan],
        status: SubscriptionStatus,
        provider_subscription_id: Optional[str] = None,
        seats_quantity: Optional[int] = None,
        reason: str = "subscription_changed",
    ) -> SubscriptionChange:
        """
        Create or update the tenant's subscription.

        Args:
            plan: New plan, or None to keep the current plan
            seats_quantity: Purchased seats, or None for the plan default

        Raises:
            MalformedInputError: no plan given for a tenant without a subscription
            ConcurrentUpdateError: compare-and-swap kept losing to other writers
        """
        for attempt in range(1, self.max_attempts + 1):
            current = self.get_for_tenant(ctx.tenant_id)

            if current is None:
                if plan is None:
                    raise MalformedInputError(
                        f"Cannot create subscription for tenant {ctx.tenant_id} without a plan"
                    )
                created = self._insert(ctx.tenant_id, plan, status, provider_subscription_id, seats_quantity)
                if created is not None:
                    logger.info(
                        "Subscription created",
                        extra={"tenant_id": ctx.tenant_id, "plan": plan.value, "status": status.value},
                    )
                    return self._change(created, True, None, None, reason)
                # Lost the insert race; update the winner's row instead.
                continue

            new_plan = plan or current.plan_enum
            values = {
                "plan": new_plan.value,
                "status": status.value,
                "seats_quantity": self._seats_for(new_plan, seats_quantity, current),
                "provider_subscription_id": provider_subscription_id or current.provider_subscription_id,
                "lock_version": Subscription.lock_version + 1,
                "updated_at": utcnow(),
            }
            previous_plan, previous_status = current.plan, current.status

            result = self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == current.id,
                    Subscription.lock_version == current.lock_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.refresh(current)
                logger.info(
                    "Subscription updated",
                    extra={
                        "tenant_id": ctx.tenant_id,
                        "plan": current.plan,
                        "status": current.status,
                        "previous_plan": previous_plan,
                        "previous_status": previous_status,
                    },
                )
                return self._change(current, False, previous_plan, previous_status, reason)

            logger.info(
                "Subscription changed concurrently, retrying",
                extra={"tenant_id": ctx.tenant_id, "attempt": attempt},
            )

        raise ConcurrentUpdateError(
            f"Subscription for tenant {ctx.tenant_id} changed concurrently "
            f"{self.max_attempts} times; giving up"
        )

    def set_status(self, ctx: TenantContext, status: SubscriptionStatus, reason: str) -> SubscriptionChange:
        """Change only the status, keeping plan and seats."""
        return self.apply_provider_update(ctx, plan=None, status=status, reason=reason)

    def _insert(self, tenant_id, plan, status, provider_subscription_id, seats_quantity) -> Optional[Subscription]:
        inserted = insert_ignoring_conflict(
            self.db,
            Subscription,
            {
                "id": generate_uuid(),
                "tenant_id": tenant_id,
                "plan": plan.value,
                "status": status.value,
                "seats_quantity": self._seats_for(plan, seats_quantity, None),
                "provider_subscription_id": provider_subscription_id,
                "lock_version": 1,
                "created_at": utcnow(),
                "updated_at": utcnow(),
            },
            index_elements=["tenant_id"],
        )
        if not inserted:
            return None
        return self.get_for_tenant(tenant_id)

    @staticmethod
    def _seats_for(plan: SubscriptionPlan, requested: Optional[int], current: Optional[Subscription]) -> Optional[int]:
        if requested is not None:
            return requested
        if current is not None and current.plan == plan.value:
            return current.seats_quantity
        return get_plan(plan.plan_code).default_seats

    @staticmethod
    def _change(subscription, created, previous_plan, previous_status, reason) -> SubscriptionChange:
        event = EntitlementsChanged(
            tenant_id=subscription.tenant_id,
            reason=reason,
            plan=subscription.plan,
            status=subscription.status,
        )
        return SubscriptionChange(
            subscription=subscription,
            created=created,
            previous_plan=previous_plan,
            previous_status=previous_status,
            events=[event],
        )
