"""
Membership service.

Seat accounting for a tenant: active memberships occupy seats and the
subscription's seats_quantity caps them (NULL means unlimited). Every change
to the active seat count is an entitlement change and yields an
EntitlementsChanged event for the caller to dispatch.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from billing_core.auth.claims import TenantContext
from billing_core.errors import SeatLimitExceededError, SubscriptionNotFoundError
from billing_core.events.domain import DomainEvent, EntitlementsChanged
from billing_core.models.membership import Membership, MembershipStatus
from billing_core.models.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class MembershipChange:
    membership: Optional[Membership]
    active_seats: int
    events: List[DomainEvent] = field(default_factory=list)


class MembershipService:
    def __init__(self, db_session: Session, ctx: TenantContext):
        if ctx is None:
            raise ValueError("TenantContext is required")
        self.db = db_session
        self.ctx = ctx

    @property
    def tenant_id(self) -> str:
        return self.ctx.tenant_id

    def count_active_seats(self) -> int:
        return (
            self.db.query(func.count(Membership.id))
            .filter(
                Membership.tenant_id == self.tenant_id,
                Membership.status == MembershipStatus.ACTIVE.value,
            )
            .scalar()
        ) or 0

    def add_member(self, user_id: str, role: str = "member") -> MembershipChange:
        """
        Add or reactivate a member, enforcing the seat limit.

        The subscription row is locked for the rest of the transaction and the
        seat count is checked again after the write, so concurrent adds cannot
        overshoot seats_quantity. On SeatLimitExceededError the caller rolls
        back.

        Raises:
            SubscriptionNotFoundError: the tenant has no subscription
            SeatLimitExceededError: all purchased seats are taken
        """
        existing = self._get(user_id)
        if existing is not None and existing.status == MembershipStatus.ACTIVE.value:
            return MembershipChange(membership=existing, active_seats=self.count_active_seats())

        max_seats = self._check_seat_available()

        if existing is None:
            membership = Membership(
                tenant_id=self.tenant_id,
                user_id=user_id,
                role=role,
                status=MembershipStatus.ACTIVE.value,
            )
            self.db.add(membership)
        else:
            membership = existing
            membership.status = MembershipStatus.ACTIVE.value
            membership.role = role
        self.db.flush()

        if max_seats is not None:
            active_seats = self.count_active_seats()
            if active_seats > max_seats:
                raise SeatLimitExceededError(active_seats - 1, max_seats)

        logger.info(
            "Member activated",
            extra={"tenant_id": self.tenant_id, "user_id": user_id, "actor": self.ctx.user_id},
        )
        return self._changed(membership, "member_added")

    def deactivate_member(self, user_id: str) -> MembershipChange:
        membership = self._get(user_id)
        if membership is None or membership.status != MembershipStatus.ACTIVE.value:
            return MembershipChange(membership=membership, active_seats=self.count_active_seats())

        membership.status = MembershipStatus.INACTIVE.value
        self.db.flush()

        logger.info(
            "Member deactivated",
            extra={"tenant_id": self.tenant_id, "user_id": user_id, "actor": self.ctx.user_id},
        )
        return self._changed(membership, "member_deactivated")

    def remove_member(self, user_id: str) -> MembershipChange:
        membership = self._get(user_id)
        if membership is None:
            return MembershipChange(membership=None, active_seats=self.count_active_seats())

        was_active = membership.status == MembershipStatus.ACTIVE.value
        self.db.delete(membership)
        self.db.flush()

        logger.info(
            "Member removed",
            extra={"tenant_id": self.tenant_id, "user_id": user_id, "actor": self.ctx.user_id},
        )
        if not was_active:
            return MembershipChange(membership=None, active_seats=self.count_active_seats())
        return self._changed(None, "member_removed")

    def _check_seat_available(self) -> Optional[int]:
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.tenant_id == self.tenant_id)
            .with_for_update()
            .first()
        )
        if subscription is None:
            raise SubscriptionNotFoundError(self.tenant_id, detail="No subscription")

        max_seats = subscription.seats_quantity
        if max_seats is None:
            return None

        current = self.count_active_seats()
        if current >= max_seats:
            logger.warning(
                "Seat limit reached",
                extra={"tenant_id": self.tenant_id, "current_seats": current, "max_seats": max_seats},
            )
            raise SeatLimitExceededError(current, max_seats)
        return max_seats

    def _get(self, user_id: str) -> Optional[Membership]:
        return (
            self.db.query(Membership)
            .filter(Membership.tenant_id == self.tenant_id, Membership.user_id == user_id)
            .first()
        )

    def _changed(self, membership: Optional[Membership], reason: str) -> MembershipChange:
        active_seats = self.count_active_seats()
        event = EntitlementsChanged(
            tenant_id=self.tenant_id,
            reason=reason,
            details={"activeSeats": active_seats},
        )
        return MembershipChange(membership=membership, active_seats=active_seats, events=[event])
