"""
Webhook Processor - drains the inbox.

State machine per inbound event:

    PENDING -> PROCESSING -> PROCESSED
                          -> FAILED (retry_count + 1, error_message)

Transactions per event:
1. Claim: PENDING -> PROCESSING, committed on its own.
2. Handle: business mutation, ledger bump, outbound event and PROCESSED,
   all committed together.
3. On any exception: the handling transaction is rolled back and the FAILED
   bookkeeping is committed in a fresh transaction.

Event types without a handler are acknowledged and marked PROCESSED.
A failure in one event never stops the sweep; the next event is processed
regardless.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from sqlalchemy.orm import Session

from billing_core.config.settings import BillingSettings
from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.events.dispatcher import build_event_dispatcher
from billing_core.models.inbound_event import InboundEvent
from billing_core.outbox.store import OutboxStore
from billing_core.webhooks.handlers import EventHandler, StripeEventHandlers
from billing_core.webhooks.inbox import WebhookInbox

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass
class ProcessingStats:
    fetched: int = 0
    processed: int = 0
    ignored: int = 0
    failed: int = 0
    skipped: int = 0
    deadline_reached: bool = False

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "ignored": self.ignored,
            "failed": self.failed,
            "skipped": self.skipped,
            "deadline_reached": self.deadline_reached,
        }


@dataclass
class RetryStats:
    requeued: int = 0
    released: int = 0

    def to_dict(self) -> dict:
        return {"requeued": self.requeued, "released": self.released}


class WebhookProcessor:
    def __init__(
        self,
        db_session: Session,
        handlers: Dict[str, Dict[str, EventHandler]],
        enabled_providers: Sequence[str],
        inbox: Optional[WebhookInbox] = None,
    ):
        """
        Args:
            handlers: provider name -> event type -> handler
            enabled_providers: providers whose PENDING rows this processor drains
        """
        self.db = db_session
        self.handlers = handlers
        self.enabled_providers = tuple(enabled_providers)
        self.inbox = inbox or WebhookInbox()

    def process_pending(self, deadline: Optional[float] = None) -> ProcessingStats:
        """
        Process every PENDING event for the enabled providers, oldest first.

        Args:
            deadline: time.monotonic() value after which no new event is
                started; the rest stay PENDING for the next sweep
        """
        stats = ProcessingStats()
        events = self.inbox.fetch_pending(self.db, self.enabled_providers)
        stats.fetched = len(events)
        self.db.commit()

        for event in events:
            if deadline is not None and time.monotonic() >= deadline:
                stats.deadline_reached = True
                logger.warning(
                    "Inbox sweep deadline reached; remaining events left PENDING",
                    extra={"done": stats.processed + stats.ignored + stats.failed, "fetched": stats.fetched},
                )
                break

            outcome = self.process_event(event)
            if outcome == "processed":
                stats.processed += 1
            elif outcome == "ignored":
                stats.ignored += 1
            elif outcome == "failed":
                stats.failed += 1
            else:
                stats.skipped += 1

        if stats.fetched:
            logger.info("Inbox sweep complete", extra=stats.to_dict())
        return stats

    def process_event(self, event: InboundEvent) -> str:
        """
        Run one event through the state machine.

        Returns:
            "processed", "ignored", "failed", or "skipped" if another sweeper
            claimed the event first
        """
        if not self.inbox.claim(self.db, event):
            self.db.rollback()
            logger.info(
                "Inbound event already claimed",
                extra={"event_id": event.id, "external_event_id": event.external_event_id},
            )
            return "skipped"
        self.db.commit()

        handler = self.handlers.get(event.provider, {}).get(event.event_type)

        try:
            if handler is None:
                logger.info(
                    "Unsupported webhook event type acknowledged",
                    extra={"provider": event.provider, "event_type": event.event_type, "event_id": event.id},
                )
            else:
                handler(self.db, event)
            self.inbox.mark_processed(self.db, event)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self._record_failure(event, e)
            return "failed"

        logger.info(
            "Inbound event processed",
            extra={
                "event_id": event.id,
                "provider": event.provider,
                "event_type": event.event_type,
                "external_event_id": event.external_event_id,
            },
        )
        return "processed" if handler is not None else "ignored"

    def retry_failed(self, max_retries: int, processing_timeout_seconds: Optional[int] = None) -> RetryStats:
        """
        Requeue FAILED events below max_retries; optionally fail stale PROCESSING rows first.

        Rows at or above the bound are left FAILED permanently.
        """
        stats = RetryStats()
        if processing_timeout_seconds is not None:
            stats.released = self.inbox.release_stale_processing(self.db, processing_timeout_seconds)
        stats.requeued = self.inbox.requeue_failed(self.db, max_retries)
        self.db.commit()

        if stats.requeued or stats.released:
            logger.info("Inbound retry sweep complete", extra=stats.to_dict())
        return stats

    def _record_failure(self, event: InboundEvent, error: Exception) -> None:
        message = (str(error) or type(error).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
        self.inbox.mark_failed(self.db, event, f"{type(error).__name__}: {message}")
        self.db.commit()

        logger.error(
            "Inbound event processing failed",
            extra={
                "event_id": event.id,
                "provider": event.provider,
                "event_type": event.event_type,
                "external_event_id": event.external_event_id,
                "retry_count": event.retry_count,
                "error": message,
            },
            exc_info=error,
        )


def build_webhook_processor(
    db_session: Session,
    settings: BillingSettings,
    ledger: Optional[EntitlementVersionLedger] = None,
    outbox: Optional[OutboxStore] = None,
) -> WebhookProcessor:
    """Processor wired with the standard handlers and event dispatcher."""
    dispatcher = build_event_dispatcher(ledger or EntitlementVersionLedger(), outbox or OutboxStore())
    stripe = StripeEventHandlers(settings, dispatcher)
    return WebhookProcessor(
        db_session,
        handlers={"stripe": stripe.registry()},
        enabled_providers=settings.enabled_providers,
    )
