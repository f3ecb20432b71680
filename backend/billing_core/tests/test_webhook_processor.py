"""
Tests for WebhookProcessor and the Stripe handlers.

Covers the state machine, per-item isolation, atomicity of mutation +
version bump + outbound event, and the retry bound.
"""

from unittest.mock import MagicMock

import pytest

from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.models.entitlement_version import EntitlementVersion
from billing_core.models.inbound_event import EventStatus, InboundEvent
from billing_core.models.invoice import Invoice
from billing_core.models.outbound_event import OutboundEvent
from billing_core.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from billing_core.webhooks.inbox import WebhookInbox
from billing_core.webhooks.processor import WebhookProcessor, build_webhook_processor


@pytest.fixture
def inbox():
    return WebhookInbox()


@pytest.fixture
def ledger():
    return EntitlementVersionLedger()


@pytest.fixture
def processor(db_session, settings):
    return build_webhook_processor(db_session, settings)


def _store(db_session, inbox, event_id, event_type, payload, provider="stripe"):
    event = inbox.store(db_session, provider, event_id, event_type, payload)
    db_session.commit()
    return event


class TestSubscriptionCreated:
    def test_top_level_metadata_payload(self, db_session, inbox, ledger, processor, make_tenant):
        make_tenant("T1")
        ledger.get_or_create(db_session, "T1")
        db_session.commit()
        assert ledger.current_version(db_session, "T1") == 1

        event = _store(
            db_session, inbox, "evt_1", "customer.subscription.created",
            {"metadata": {"tenant_id": "T1"}, "plan": "starter"},
        )
        stats = processor.process_pending()

        assert stats.processed == 1
        db_session.refresh(event)
        assert event.status == EventStatus.PROCESSED.value
        assert event.processed_at is not None

        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.plan == SubscriptionPlan.STARTER.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value

        assert ledger.current_version(db_session, "T1") == 2

        outbound = db_session.query(OutboundEvent).all()
        assert len(outbound) == 1
        assert outbound[0].event_type == "EntitlementsChanged"
        assert outbound[0].aggregate_type == "Tenant"
        assert outbound[0].aggregate_id == "T1"
        assert outbound[0].status == EventStatus.PENDING.value
        assert outbound[0].payload["tenantId"] == "T1"
        assert outbound[0].payload["plan"] == "STARTER"
        assert outbound[0].payload["status"] == "ACTIVE"
        assert outbound[0].payload["entitlementVersion"] == 2

    def test_stripe_envelope_with_configured_price(
        self, db_session, inbox, processor, make_tenant, stripe_event
    ):
        make_tenant("T1")
        payload = stripe_event("customer.subscription.created", {
            "id": "sub_123",
            "status": "trialing",
            "metadata": {"tenant_id": "T1"},
            "items": {"data": [{"price": {"id": "price_pro_monthly"}, "quantity": 25}]},
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.plan == SubscriptionPlan.PRO.value
        assert subscription.status == SubscriptionStatus.TRIALING.value
        assert subscription.seats_quantity == 25
        assert subscription.provider_subscription_id == "sub_123"

    def test_price_metadata_plan(self, db_session, inbox, processor, make_tenant, stripe_event):
        make_tenant("T1")
        payload = stripe_event("customer.subscription.created", {
            "metadata": {"tenant_id": "T1"},
            "items": {"data": [{"price": {"id": "price_other", "metadata": {"plan": "enterprise"}}}]},
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.plan == SubscriptionPlan.ENTERPRISE.value
        assert subscription.seats_quantity is None


class TestSubscriptionUpdates:
    def test_update_changes_plan_and_bumps(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1", plan=SubscriptionPlan.STARTER)
        payload = stripe_event("customer.subscription.updated", {
            "status": "active",
            "metadata": {"tenant_id": "T1", "plan": "pro"},
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.plan == SubscriptionPlan.PRO.value
        assert subscription.seats_quantity == 50
        assert subscription.lock_version == 2
        assert ledger.current_version(db_session, "T1") == 2

    def test_deleted_is_handled_like_update(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1", plan=SubscriptionPlan.PRO)
        payload = stripe_event("customer.subscription.deleted", {"metadata": {"tenant_id": "T1"}})
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.status == SubscriptionStatus.CANCELLED.value
        assert subscription.plan == SubscriptionPlan.PRO.value
        assert ledger.current_version(db_session, "T1") == 2
        outbound = db_session.query(OutboundEvent).one()
        assert outbound.payload["status"] == "CANCELLED"

    @pytest.mark.parametrize("stripe_status,expected", [
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELLED),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
    ])
    def test_status_mapping(self, db_session, inbox, processor, make_tenant, make_subscription, stripe_event, stripe_status, expected):
        make_tenant("T1")
        make_subscription("T1")
        payload = stripe_event("customer.subscription.updated", {
            "status": stripe_status,
            "metadata": {"tenant_id": "T1"},
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        assert db_session.query(Subscription).filter_by(tenant_id="T1").one().status == expected.value


class TestFailures:
    def test_empty_payload_fails_with_retry_count(self, db_session, inbox, processor):
        event = _store(db_session, inbox, "evt_2", "customer.subscription.created", {})

        stats = processor.process_pending()

        assert stats.failed == 1
        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert event.error_message
        assert event.retry_count == 1

    def test_unknown_plan_fails_without_side_effects(self, db_session, inbox, processor, make_tenant):
        make_tenant("T1")
        event = _store(
            db_session, inbox, "evt_3", "customer.subscription.created",
            {"metadata": {"tenant_id": "T1"}, "plan": "platinum"},
        )

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert "platinum" in event.error_message
        assert db_session.query(Subscription).count() == 0
        assert db_session.query(OutboundEvent).count() == 0

    def test_unknown_tenant_fails(self, db_session, inbox, processor):
        event = _store(
            db_session, inbox, "evt_4", "customer.subscription.created",
            {"metadata": {"tenant_id": "ghost"}, "plan": "starter"},
        )

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert "ghost" in event.error_message

    def test_missing_plan_on_new_subscription_fails(self, db_session, inbox, processor, make_tenant):
        make_tenant("T1")
        event = _store(
            db_session, inbox, "evt_5", "customer.subscription.created",
            {"metadata": {"tenant_id": "T1"}},
        )

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value

    def test_unconfigured_price_on_update_fails_without_side_effects(
        self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event
    ):
        make_tenant("T1")
        make_subscription("T1", plan=SubscriptionPlan.STARTER)
        ledger.get_or_create(db_session, "T1")
        db_session.commit()
        payload = stripe_event("customer.subscription.updated", {
            "status": "active",
            "metadata": {"tenant_id": "T1"},
            "items": {"data": [{"price": {"id": "price_new_unconfigured"}, "quantity": 5}]},
        })
        event = _store(db_session, inbox, payload["id"], payload["type"], payload)

        stats = processor.process_pending()

        assert stats.failed == 1
        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert "price_new_unconfigured" in event.error_message
        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.plan == SubscriptionPlan.STARTER.value
        assert subscription.lock_version == 1
        assert ledger.current_version(db_session, "T1") == 1
        assert db_session.query(OutboundEvent).count() == 0

    def test_unmapped_legacy_plan_id_fails(self, db_session, inbox, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1", plan=SubscriptionPlan.PRO)
        payload = stripe_event("customer.subscription.updated", {
            "metadata": {"tenant_id": "T1"},
            "plan": {"id": "plan_legacy_gold"},
        })
        event = _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert "plan_legacy_gold" in event.error_message
        assert db_session.query(Subscription).one().plan == SubscriptionPlan.PRO.value

    def test_failure_rolls_back_partial_mutation(self, db_session, inbox, ledger, make_tenant, settings):
        make_tenant("T1")
        ledger.get_or_create(db_session, "T1")
        db_session.commit()

        def mutate_then_fail(db, event):
            ledger.bump(db, "T1")
            raise RuntimeError("handler exploded")

        processor = WebhookProcessor(
            db_session,
            handlers={"stripe": {"customer.subscription.updated": mutate_then_fail}},
            enabled_providers=["stripe"],
        )
        event = _store(db_session, inbox, "evt_6", "customer.subscription.updated", {})

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert "handler exploded" in event.error_message
        assert ledger.current_version(db_session, "T1") == 1

    def test_one_failure_does_not_stop_the_sweep(self, db_session, inbox, processor, make_tenant):
        make_tenant("T1")
        bad = _store(db_session, inbox, "evt_bad", "customer.subscription.created", {})
        good = _store(
            db_session, inbox, "evt_good", "customer.subscription.created",
            {"metadata": {"tenant_id": "T1"}, "plan": "starter"},
        )

        stats = processor.process_pending()

        assert stats.failed == 1
        assert stats.processed == 1
        db_session.refresh(bad)
        db_session.refresh(good)
        assert bad.status == EventStatus.FAILED.value
        assert good.status == EventStatus.PROCESSED.value


class TestUnsupportedAndProviders:
    def test_unsupported_type_is_acknowledged(self, db_session, inbox, processor):
        event = _store(db_session, inbox, "evt_7", "charge.refunded", {"whatever": True})

        stats = processor.process_pending()

        assert stats.ignored == 1
        db_session.refresh(event)
        assert event.status == EventStatus.PROCESSED.value
        assert event.error_message is None
        assert db_session.query(OutboundEvent).count() == 0

    def test_disabled_provider_is_not_drained(self, db_session, inbox, processor):
        event = _store(db_session, inbox, "evt_8", "x", {}, provider="paddle")

        stats = processor.process_pending()

        assert stats.fetched == 0
        db_session.refresh(event)
        assert event.status == EventStatus.PENDING.value

    def test_expired_deadline_leaves_events_pending(self, db_session, inbox, processor):
        event = _store(db_session, inbox, "evt_9", "charge.refunded", {})

        stats = processor.process_pending(deadline=0.0)

        assert stats.deadline_reached is True
        db_session.refresh(event)
        assert event.status == EventStatus.PENDING.value

    def test_claimed_elsewhere_is_skipped(self, db_session, inbox):
        handler = MagicMock()
        processor = WebhookProcessor(db_session, {"stripe": {"x": handler}}, ["stripe"], inbox=inbox)
        event = _store(db_session, inbox, "evt_10", "x", {})
        inbox.claim(db_session, event)
        db_session.commit()

        assert processor.process_event(event) == "skipped"
        handler.assert_not_called()


class TestInvoices:
    def test_payment_succeeded_records_invoice(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1", provider_subscription_id="sub_1")
        payload = stripe_event("invoice.payment_succeeded", {
            "id": "in_1",
            "subscription": "sub_1",
            "amount_paid": 4900,
            "currency": "usd",
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        invoice = db_session.query(Invoice).one()
        assert invoice.tenant_id == "T1"
        assert invoice.amount_paid == 4900
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE.value
        assert ledger.current_version(db_session, "T1") == 2
        outbound = {e.event_type: e for e in db_session.query(OutboundEvent).all()}
        assert set(outbound) == {"EntitlementsChanged", "InvoicePaid"}
        changed = outbound["EntitlementsChanged"].payload
        assert changed["plan"] == "STARTER"
        assert changed["status"] == "ACTIVE"
        assert changed["reason"] == "invoice.payment_succeeded"
        assert changed["entitlementVersion"] == 2

    def test_redelivered_invoice_bumps_once(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1")
        for event_id in ("evt_paid_a", "evt_paid_b"):
            payload = stripe_event(
                "invoice.payment_succeeded",
                {"id": "in_same", "metadata": {"tenant_id": "T1"}},
                event_id=event_id,
            )
            _store(db_session, inbox, payload["id"], payload["type"], payload)

        stats = processor.process_pending()

        assert stats.processed == 2
        assert db_session.query(Invoice).count() == 1
        assert ledger.current_version(db_session, "T1") == 2
        assert db_session.query(OutboundEvent).count() == 2

    def test_payment_succeeded_reactivates_past_due(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1", status=SubscriptionStatus.PAST_DUE)
        payload = stripe_event("invoice.payment_succeeded", {
            "id": "in_2",
            "metadata": {"tenant_id": "T1"},
        })
        _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE.value
        assert ledger.current_version(db_session, "T1") == 2
        types = sorted(e.event_type for e in db_session.query(OutboundEvent).all())
        assert types == ["EntitlementsChanged", "InvoicePaid"]
        changed = db_session.query(OutboundEvent).filter_by(event_type="EntitlementsChanged").one()
        assert changed.payload["status"] == "ACTIVE"

    def test_payment_failed_does_not_change_status(self, db_session, inbox, ledger, processor, make_tenant, make_subscription, stripe_event):
        make_tenant("T1")
        make_subscription("T1")
        payload = stripe_event("invoice.payment_failed", {
            "id": "in_3",
            "metadata": {"tenant_id": "T1"},
            "attempt_count": 2,
        })
        event = _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.PROCESSED.value
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE.value
        assert ledger.current_version(db_session, "T1") == 2
        outbound = {e.event_type: e for e in db_session.query(OutboundEvent).all()}
        assert set(outbound) == {"EntitlementsChanged", "PaymentFailed"}
        assert outbound["PaymentFailed"].payload["attemptCount"] == 2
        changed = outbound["EntitlementsChanged"].payload
        assert changed["status"] == "ACTIVE"
        assert changed["plan"] == "STARTER"
        assert changed["entitlementVersion"] == 2

    def test_invoice_without_tenant_fails(self, db_session, inbox, processor, stripe_event):
        payload = stripe_event("invoice.payment_failed", {"id": "in_4", "subscription": "sub_unknown"})
        event = _store(db_session, inbox, payload["id"], payload["type"], payload)

        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value


class TestRetrySweep:
    def test_failed_event_retried_until_bound(self, db_session, inbox, processor):
        event = _store(db_session, inbox, "evt_retry", "customer.subscription.created", {})

        for expected_retry in range(1, 4):
            processor.process_pending()
            db_session.refresh(event)
            assert event.status == EventStatus.FAILED.value
            assert event.retry_count == expected_retry
            processor.retry_failed(max_retries=3)

        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value
        assert event.retry_count == 3

        # Nothing left to process: the event stays FAILED permanently.
        assert processor.process_pending().fetched == 0

    def test_retry_then_success(self, db_session, inbox, processor, make_tenant):
        event = _store(
            db_session, inbox, "evt_late_tenant", "customer.subscription.created",
            {"metadata": {"tenant_id": "T9"}, "plan": "starter"},
        )
        processor.process_pending()
        db_session.refresh(event)
        assert event.status == EventStatus.FAILED.value

        make_tenant("T9")
        processor.retry_failed(max_retries=3)
        processor.process_pending()

        db_session.refresh(event)
        assert event.status == EventStatus.PROCESSED.value
        assert event.retry_count == 1
        assert db_session.query(EntitlementVersion).filter_by(tenant_id="T9").one().version == 2
