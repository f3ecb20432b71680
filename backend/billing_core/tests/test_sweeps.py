"""
End-to-end sweep tests: receipt -> inbox sweep -> outbox sweep, plus the
retry and cleanup sweeps and concurrent inbox sweepers.
"""

import json
import threading
from datetime import timedelta

import pytest

from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.jobs.billing_worker import build_scheduler
from billing_core.jobs.sweeps import (
    CLEANUP_SWEEP,
    INBOX_SWEEP,
    OUTBOX_SWEEP,
    RETRY_SWEEP,
    build_sweep_jobs,
    run_cleanup_sweep,
    run_inbox_sweep,
    run_outbox_sweep,
    run_retry_sweep,
)
from billing_core.models.base import utcnow
from billing_core.models.inbound_event import EventStatus, InboundEvent
from billing_core.models.outbound_event import OutboundEvent
from billing_core.models.subscription import Subscription
from billing_core.models.tenant import Tenant
from billing_core.outbox.sinks import LoggingSink
from billing_core.webhooks.inbox import WebhookInbox
from billing_core.webhooks.receiver import WebhookReceiver
from billing_core.webhooks.signatures import build_stripe_header

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingSink(LoggingSink):
    def __init__(self):
        super().__init__()
        self.messages = []
        self._lock = threading.Lock()

    def deliver(self, event):
        with self._lock:
            self.messages.append(event.to_message())


def _subscription_object(tenant_id, price_id="price_pro_monthly", status="active", quantity=5):
    return {
        "id": f"sub_{tenant_id}",
        "object": "subscription",
        "status": status,
        "metadata": {"tenant_id": tenant_id},
        "items": {"data": [{"price": {"id": price_id}, "quantity": quantity}]},
    }


class TestEndToEnd:
    def test_webhook_to_published_event(self, session_factory, db_session, settings, stripe_event):
        db_session.add(Tenant(id="T1", name="Acme"))
        db_session.commit()
        body = json.dumps(
            stripe_event("customer.subscription.created", _subscription_object("T1"), event_id="evt_e2e")
        ).encode("utf-8")

        receipt = WebhookReceiver(db_session, settings).receive(
            "stripe", body, build_stripe_header(body, WEBHOOK_SECRET)
        )
        assert receipt.accepted

        inbox_stats = run_inbox_sweep(session_factory, settings)
        sink = RecordingSink()
        outbox_stats = run_outbox_sweep(session_factory, settings, sink)

        assert inbox_stats.processed == 1
        assert outbox_stats.delivered == 1
        (message,) = sink.messages
        assert message["eventType"] == "EntitlementsChanged"
        assert message["payload"]["tenantId"] == "T1"
        assert message["payload"]["plan"] == "PRO"
        assert message["payload"]["entitlementVersion"] == 2

        db_session.expire_all()
        subscription = db_session.query(Subscription).filter_by(tenant_id="T1").one()
        assert subscription.seats_quantity == 5
        assert db_session.query(InboundEvent).one().status == EventStatus.PROCESSED.value
        assert db_session.query(OutboundEvent).one().status == EventStatus.PROCESSED.value

    def test_redelivery_has_no_second_effect(self, session_factory, db_session, settings, stripe_event):
        db_session.add(Tenant(id="T1", name="Acme"))
        db_session.commit()
        body = json.dumps(
            stripe_event("customer.subscription.created", _subscription_object("T1"), event_id="evt_once")
        ).encode("utf-8")
        receiver = WebhookReceiver(db_session, settings)

        receiver.receive("stripe", body, build_stripe_header(body, WEBHOOK_SECRET))
        run_inbox_sweep(session_factory, settings)
        receiver.receive("stripe", body, build_stripe_header(body, WEBHOOK_SECRET))
        second = run_inbox_sweep(session_factory, settings)

        assert second.fetched == 0
        assert EntitlementVersionLedger().current_version(db_session, "T1") == 2
        assert db_session.query(OutboundEvent).count() == 1


class TestRetryAndCleanupSweeps:
    def test_retry_sweep_requeues_both_sides(self, session_factory, db_session, settings):
        inbound = WebhookInbox().store(db_session, "stripe", "evt_failed", "invoice.paid", {"data": {"object": {}}})
        inbound.status = EventStatus.FAILED.value
        inbound.retry_count = 1
        outbound = OutboundEvent(
            event_type="EntitlementsChanged",
            aggregate_type="Tenant",
            aggregate_id="T1",
            payload={"tenantId": "T1"},
            status=EventStatus.FAILED.value,
            retry_count=1,
        )
        db_session.add(outbound)
        db_session.commit()

        stats = run_retry_sweep(session_factory, settings)

        assert stats["inbox_requeued"] == 1
        assert stats["outbox_requeued"] == 1
        db_session.expire_all()
        assert db_session.get(InboundEvent, inbound.id).status == EventStatus.PENDING.value
        assert db_session.get(OutboundEvent, outbound.id).status == EventStatus.PENDING.value

    def test_retry_sweep_releases_stuck_processing(self, session_factory, db_session, settings):
        stuck = WebhookInbox().store(db_session, "stripe", "evt_stuck", "invoice.paid", {"data": {"object": {}}})
        stuck.status = EventStatus.PROCESSING.value
        stuck.updated_at = utcnow() - timedelta(hours=2)
        db_session.commit()

        stats = run_retry_sweep(session_factory, settings)

        assert stats["inbox_released"] == 1
        db_session.expire_all()
        row = db_session.get(InboundEvent, stuck.id)
        # Released as a failed attempt, then requeued within the same tick.
        assert row.status == EventStatus.PENDING.value
        assert row.retry_count == 1

    def test_cleanup_sweep(self, session_factory, db_session, settings):
        old = OutboundEvent(
            event_type="EntitlementsChanged",
            aggregate_type="Tenant",
            aggregate_id="T1",
            payload={},
            status=EventStatus.PROCESSED.value,
            processed_at=utcnow() - timedelta(days=settings.outbox_retention_days + 1),
        )
        db_session.add(old)
        db_session.commit()

        assert run_cleanup_sweep(session_factory, settings) == 1


class TestSweepWiring:
    def test_build_sweep_jobs(self, session_factory, settings):
        jobs = {job.name: job for job in build_sweep_jobs(session_factory, settings, LoggingSink())}

        assert set(jobs) == {INBOX_SWEEP, OUTBOX_SWEEP, RETRY_SWEEP, CLEANUP_SWEEP}
        assert jobs[INBOX_SWEEP].interval_seconds == settings.inbox_sweep_interval_seconds
        assert jobs[RETRY_SWEEP].run_on_start is False

    def test_worker_scheduler_runs_a_tick(self, session_factory, settings):
        scheduler = build_scheduler(session_factory=session_factory, settings=settings, sink=LoggingSink())
        assert scheduler.run_once(OUTBOX_SWEEP) is True


@pytest.mark.concurrency
class TestConcurrentSweepers:
    def test_each_event_processed_exactly_once(self, file_session_factory, settings, stripe_event):
        tenants = [f"T{i}" for i in range(5)]
        with file_session_factory() as db:
            inbox = WebhookInbox()
            for tenant_id in tenants:
                db.add(Tenant(id=tenant_id, name=tenant_id))
                inbox.store(
                    db, "stripe", f"evt_{tenant_id}", "customer.subscription.created",
                    stripe_event("customer.subscription.created", _subscription_object(tenant_id)),
                )
            db.commit()

        results = []
        errors = []
        barrier = threading.Barrier(3)

        def sweeper():
            try:
                barrier.wait(10)
                results.append(run_inbox_sweep(file_session_factory, settings))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=sweeper) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(60)

        assert errors == []
        assert sum(stats.processed for stats in results) == len(tenants)
        assert sum(stats.failed for stats in results) == 0

        with file_session_factory() as db:
            ledger = EntitlementVersionLedger()
            assert all(ledger.current_version(db, t) == 2 for t in tenants)
            assert db.query(OutboundEvent).count() == len(tenants)
            assert db.query(InboundEvent).filter_by(status=EventStatus.PROCESSED.value).count() == len(tenants)
