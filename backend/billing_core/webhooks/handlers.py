"""
Stripe event handlers.

Each handler runs inside the processor's transaction for one inbound event:
it applies the business mutation and dispatches the resulting domain events
(ledger bump, outbound event) on the same session. Any exception rolls all
of it back and fails the inbound event.

Payload mapping:
- The business object is data.object; a payload without data but with
  metadata is treated as the object itself.
- Tenant: object.metadata.tenant_id
- Plan, first match wins:
    1. items.data[0].price.id via the configured price -> plan map
    2. items.data[0].price.metadata.plan
    3. object.metadata.plan
    4. object.plan (a code, or a legacy plan object with metadata.plan / id)
- An unresolvable plan code fails the event; it never falls back to a
  default plan. A price or plan id that maps to nothing fails it too, even
  on an update of an existing subscription.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from billing_core.auth.claims import TenantContext
from billing_core.config.settings import BillingSettings
from billing_core.database.upsert import insert_ignoring_conflict
from billing_core.entitlements.plan_catalog import find_plan
from billing_core.errors import MalformedInputError, PlanNotFoundError, TenantNotFoundError
from billing_core.events.dispatcher import EventDispatcher
from billing_core.events.domain import EntitlementsChanged, InvoicePaid, PaymentFailed
from billing_core.models.base import generate_uuid, utcnow
from billing_core.models.inbound_event import InboundEvent
from billing_core.models.invoice import Invoice
from billing_core.models.subscription import SubscriptionPlan, SubscriptionStatus
from billing_core.models.tenant import Tenant
from billing_core.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

EventHandler = Callable[[Session, InboundEvent], None]

_STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
}


def map_stripe_status(raw_status: Optional[str], event_type: str) -> SubscriptionStatus:
    """Map a Stripe subscription status; unknown values are treated as expired."""
    if not raw_status:
        if event_type == SUBSCRIPTION_DELETED:
            return SubscriptionStatus.CANCELLED
        return SubscriptionStatus.ACTIVE
    return _STRIPE_STATUS_MAP.get(raw_status.lower(), SubscriptionStatus.EXPIRED)


def extract_object(payload: Any) -> Dict[str, Any]:
    """
    Return the business object carried by an event payload.

    Raises:
        MalformedInputError: no data.object and no top-level metadata
    """
    if not isinstance(payload, dict):
        raise MalformedInputError("Event payload is not an object")

    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    if isinstance(payload.get("metadata"), dict):
        return payload
    raise MalformedInputError("Event payload has no data.object or metadata")


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = obj.get("items")
    if isinstance(items, dict):
        data = items.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
    return {}


class StripeEventHandlers:
    """Handlers for the Stripe event types the billing core acts on."""

    def __init__(self, settings: BillingSettings, dispatcher: EventDispatcher):
        self.settings = settings
        self.dispatcher = dispatcher

    def registry(self) -> Dict[str, EventHandler]:
        return {
            SUBSCRIPTION_CREATED: self.handle_subscription_change,
            SUBSCRIPTION_UPDATED: self.handle_subscription_change,
            SUBSCRIPTION_DELETED: self.handle_subscription_change,
            INVOICE_PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self.handle_payment_failed,
        }

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def handle_subscription_change(self, db: Session, event: InboundEvent) -> None:
        """Created, updated and deleted all upsert the tenant's subscription."""
        obj = extract_object(event.raw_payload)

        tenant_id = _metadata(obj).get("tenant_id")
        if not tenant_id:
            raise MalformedInputError("Subscription event has no metadata.tenant_id")
        self._require_tenant(db, tenant_id)

        plan = self.resolve_plan(obj)
        status = map_stripe_status(obj.get("status"), event.event_type)
        seats = self._quantity(obj)

        change = SubscriptionService(db).apply_provider_update(
            TenantContext.system(tenant_id),
            plan=plan,
            status=status,
            provider_subscription_id=obj.get("id") if isinstance(obj.get("id"), str) else None,
            seats_quantity=seats,
            reason=event.event_type,
        )
        self.dispatcher.dispatch(db, change.events)

    def resolve_plan(self, obj: Dict[str, Any]) -> Optional[SubscriptionPlan]:
        """
        Resolve the plan named by a subscription object.

        Returns None when the object carries no plan data at all.

        Raises:
            PlanNotFoundError: a plan, price or plan id is present but does not
                resolve to a catalog plan
        """
        code = self._plan_code(obj)
        if code is None:
            reference = self._plan_reference(obj)
            if reference is not None:
                raise PlanNotFoundError(reference)
            return None
        plan = find_plan(code)
        if plan is None:
            raise PlanNotFoundError(code)
        return SubscriptionPlan.from_code(plan.code)

    def _plan_code(self, obj: Dict[str, Any]) -> Optional[str]:
        price = _first_item(obj).get("price")
        if isinstance(price, dict):
            price_id = price.get("id")
            if price_id and price_id in self.settings.stripe_price_plans:
                return self.settings.stripe_price_plans[price_id]
            price_plan = _metadata(price).get("plan")
            if price_plan:
                return str(price_plan)
        elif isinstance(price, str) and price in self.settings.stripe_price_plans:
            return self.settings.stripe_price_plans[price]

        metadata_plan = _metadata(obj).get("plan")
        if metadata_plan:
            return str(metadata_plan)

        plan = obj.get("plan")
        if isinstance(plan, str) and plan:
            return plan
        if isinstance(plan, dict):
            legacy_id = plan.get("id")
            if legacy_id and legacy_id in self.settings.stripe_price_plans:
                return self.settings.stripe_price_plans[legacy_id]
            legacy_plan = _metadata(plan).get("plan")
            if legacy_plan:
                return str(legacy_plan)
            if legacy_id:
                return str(legacy_id)
        return None

    @staticmethod
    def _plan_reference(obj: Dict[str, Any]) -> Optional[str]:
        """The raw price or plan id carried by the object, if any."""
        price = _first_item(obj).get("price")
        if isinstance(price, dict) and price.get("id"):
            return str(price["id"])
        if isinstance(price, str) and price:
            return price
        plan = obj.get("plan")
        if isinstance(plan, dict) and plan.get("id"):
            return str(plan["id"])
        return None

    @staticmethod
    def _quantity(obj: Dict[str, Any]) -> Optional[int]:
        quantity = obj.get("quantity")
        if quantity is None:
            quantity = _first_item(obj).get("quantity")
        if quantity is None:
            return None
        try:
            return int(quantity)
        except (TypeError, ValueError):
            raise MalformedInputError(f"Subscription quantity is not a number: {quantity!r}")

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def handle_payment_succeeded(self, db: Session, event: InboundEvent) -> None:
        """
        Record the paid invoice and signal an entitlement change.

        A PAST_DUE subscription becomes ACTIVE again; any other subscription
        keeps its status and the change carries the current plan and status.
        """
        invoice = extract_object(event.raw_payload)
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise MalformedInputError("Invoice event has no invoice id")

        tenant_id = self._invoice_tenant(db, invoice)
        self._require_tenant(db, tenant_id)

        inserted = insert_ignoring_conflict(
            db,
            Invoice,
            {
                "id": generate_uuid(),
                "tenant_id": tenant_id,
                "provider_invoice_id": invoice_id,
                "amount_paid": invoice.get("amount_paid"),
                "currency": invoice.get("currency"),
                "paid_at": self._paid_at(invoice),
                "created_at": utcnow(),
                "updated_at": utcnow(),
            },
            index_elements=["provider_invoice_id"],
        )
        if not inserted:
            logger.info(
                "Invoice already recorded",
                extra={"tenant_id": tenant_id, "invoice_id": invoice_id},
            )
            return

        events = [
            InvoicePaid(
                tenant_id=tenant_id,
                provider_invoice_id=invoice_id,
                amount_paid=invoice.get("amount_paid"),
                currency=invoice.get("currency"),
            )
        ]

        service = SubscriptionService(db)
        subscription = service.get_for_tenant(tenant_id)
        if subscription is not None and subscription.status == SubscriptionStatus.PAST_DUE.value:
            change = service.set_status(
                TenantContext.system(tenant_id),
                SubscriptionStatus.ACTIVE,
                reason=event.event_type,
            )
            events.extend(change.events)
        else:
            events.append(self._entitlements_unchanged(tenant_id, subscription, event.event_type))

        self.dispatcher.dispatch(db, events)
        logger.info("Invoice payment recorded", extra={"tenant_id": tenant_id, "invoice_id": invoice_id})

    def handle_payment_failed(self, db: Session, event: InboundEvent) -> None:
        """
        Notify downstream of a failed payment and signal an entitlement change.

        The subscription status is left alone; Stripe reports the move to
        past_due through its own customer.subscription.updated event.
        """
        invoice = extract_object(event.raw_payload)
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise MalformedInputError("Invoice event has no invoice id")

        tenant_id = self._invoice_tenant(db, invoice)
        self._require_tenant(db, tenant_id)

        logger.warning(
            "Invoice payment failed",
            extra={
                "tenant_id": tenant_id,
                "invoice_id": invoice_id,
                "attempt_count": invoice.get("attempt_count"),
            },
        )
        self.dispatcher.dispatch(
            db,
            [
                PaymentFailed(
                    tenant_id=tenant_id,
                    provider_invoice_id=invoice_id,
                    attempt_count=invoice.get("attempt_count"),
                ),
                self._entitlements_unchanged(
                    tenant_id, SubscriptionService(db).get_for_tenant(tenant_id), event.event_type
                ),
            ],
        )

    @staticmethod
    def _entitlements_unchanged(tenant_id: str, subscription, reason: str) -> EntitlementsChanged:
        return EntitlementsChanged(
            tenant_id=tenant_id,
            reason=reason,
            plan=subscription.plan if subscription is not None else None,
            status=subscription.status if subscription is not None else None,
        )

    def _invoice_tenant(self, db: Session, invoice: Dict[str, Any]) -> str:
        tenant_id = _metadata(invoice).get("tenant_id")
        if tenant_id:
            return tenant_id

        details = invoice.get("subscription_details")
        if isinstance(details, dict):
            tenant_id = _metadata(details).get("tenant_id")
            if tenant_id:
                return tenant_id

        provider_subscription_id = invoice.get("subscription")
        if isinstance(provider_subscription_id, str) and provider_subscription_id:
            subscription = SubscriptionService(db).find_by_provider_id(provider_subscription_id)
            if subscription is not None:
                return subscription.tenant_id

        raise TenantNotFoundError(provider_subscription_id or None)

    @staticmethod
    def _paid_at(invoice: Dict[str, Any]) -> Optional[datetime]:
        transitions = invoice.get("status_transitions")
        if isinstance(transitions, dict) and transitions.get("paid_at"):
            try:
                return datetime.fromtimestamp(int(transitions["paid_at"]), tz=timezone.utc)
            except (TypeError, ValueError):
                return None
        return utcnow()

    @staticmethod
    def _require_tenant(db: Session, tenant_id: str) -> None:
        if db.get(Tenant, tenant_id) is None:
            raise TenantNotFoundError(tenant_id)
