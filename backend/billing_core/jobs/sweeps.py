"""
Sweep entry points.

Each function opens its own session from the session factory, does one tick
of work and closes the session. build_sweep_jobs() turns them into
SweepJobs for the scheduler.
"""

import logging
import threading
import time
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from billing_core.config.settings import BillingSettings
from billing_core.jobs.scheduler import SweepJob
from billing_core.outbox.publisher import OutboxPublisher, PublishStats
from billing_core.outbox.sinks import DeliverySink
from billing_core.outbox.store import OutboxStore
from billing_core.webhooks.processor import ProcessingStats, build_webhook_processor

logger = logging.getLogger(__name__)

INBOX_SWEEP = "inbox"
OUTBOX_SWEEP = "outbox"
RETRY_SWEEP = "retry"
CLEANUP_SWEEP = "cleanup"


def _deadline(settings: BillingSettings) -> Optional[float]:
    if settings.sweep_tick_deadline_seconds <= 0:
        return None
    return time.monotonic() + settings.sweep_tick_deadline_seconds


def run_inbox_sweep(session_factory: sessionmaker, settings: BillingSettings) -> ProcessingStats:
    db = session_factory()
    try:
        processor = build_webhook_processor(db, settings)
        return processor.process_pending(deadline=_deadline(settings))
    finally:
        db.close()


def run_outbox_sweep(session_factory: sessionmaker, settings: BillingSettings, sink: DeliverySink) -> PublishStats:
    db = session_factory()
    try:
        publisher = OutboxPublisher(db, sink, batch_size=settings.outbox_batch_size)
        return publisher.publish_pending(deadline=_deadline(settings))
    finally:
        db.close()


def run_retry_sweep(session_factory: sessionmaker, settings: BillingSettings) -> dict:
    """Requeue retryable FAILED rows in both the inbox and the outbox."""
    db = session_factory()
    try:
        processor = build_webhook_processor(db, settings)
        inbox_stats = processor.retry_failed(
            settings.inbox_max_retries,
            processing_timeout_seconds=settings.processing_timeout_seconds,
        )

        outbox = OutboxStore()
        outbox_released = outbox.release_stale_processing(db, settings.processing_timeout_seconds)
        outbox_requeued = outbox.requeue_failed(db, settings.outbox_max_retries)
        db.commit()

        stats = {
            "inbox_requeued": inbox_stats.requeued,
            "inbox_released": inbox_stats.released,
            "outbox_requeued": outbox_requeued,
            "outbox_released": outbox_released,
        }
        logger.info("Retry sweep complete", extra=stats)
        return stats
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_cleanup_sweep(session_factory: sessionmaker, settings: BillingSettings) -> int:
    db = session_factory()
    try:
        deleted = OutboxStore().delete_processed_before(db, settings.outbox_retention_days)
        logger.info(
            "Outbox cleanup complete",
            extra={"deleted": deleted, "retention_days": settings.outbox_retention_days},
        )
        return deleted
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def build_sweep_jobs(
    session_factory: sessionmaker,
    settings: BillingSettings,
    sink: DeliverySink,
) -> List[SweepJob]:
    def inbox(stop: threading.Event):
        return run_inbox_sweep(session_factory, settings)

    def outbox(stop: threading.Event):
        return run_outbox_sweep(session_factory, settings, sink)

    def retry(stop: threading.Event):
        return run_retry_sweep(session_factory, settings)

    def cleanup(stop: threading.Event):
        return run_cleanup_sweep(session_factory, settings)

    jitter = settings.sweep_jitter_seconds
    deadline = settings.sweep_tick_deadline_seconds or None
    return [
        SweepJob(INBOX_SWEEP, settings.inbox_sweep_interval_seconds, inbox, jitter, deadline),
        SweepJob(OUTBOX_SWEEP, settings.outbox_sweep_interval_seconds, outbox, jitter, deadline),
        SweepJob(RETRY_SWEEP, settings.retry_sweep_interval_seconds, retry, jitter, deadline, run_on_start=False),
        SweepJob(CLEANUP_SWEEP, settings.cleanup_sweep_interval_seconds, cleanup, jitter, None, run_on_start=False),
    ]
