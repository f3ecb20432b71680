"""
Webhook Inbox - idempotent store for inbound provider events.

The (provider, external_event_id) pair is the idempotency key. Storing the
same pair twice returns the existing row unchanged. When two deliveries of
the same event race, the insert that loses the unique-key conflict re-reads
and returns the winner's row rather than raising.

The inbox only persists. Business effects happen later in WebhookProcessor.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from billing_core.database.upsert import insert_ignoring_conflict
from billing_core.models.base import generate_uuid, utcnow
from billing_core.models.inbound_event import EventStatus, InboundEvent

logger = logging.getLogger(__name__)


class WebhookInbox:
    def store(
        self,
        db: Session,
        provider: str,
        external_event_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> InboundEvent:
        """Persist an event as PENDING, or return the existing row for a redelivery."""
        event, _ = self.store_with_status(db, provider, external_event_id, event_type, payload)
        return event

    def store_with_status(
        self,
        db: Session,
        provider: str,
        external_event_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> Tuple[InboundEvent, bool]:
        """
        Like store(), also reporting whether this call created the row.

        Does not commit; the caller commits once the receipt is complete.
        """
        if not provider or not external_event_id:
            raise ValueError("provider and external_event_id are required")

        existing = self.find(db, provider, external_event_id)
        if existing is not None:
            logger.info(
                "Duplicate webhook delivery ignored",
                extra={"provider": provider, "external_event_id": external_event_id},
            )
            return existing, False

        now = utcnow()
        created = insert_ignoring_conflict(
            db,
            InboundEvent,
            {
                "id": generate_uuid(),
                "provider": provider,
                "external_event_id": external_event_id,
                "event_type": event_type,
                "raw_payload": payload,
                "status": EventStatus.PENDING.value,
                "retry_count": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["provider", "external_event_id"],
        )

        event = self.find(db, provider, external_event_id)
        if event is None:
            raise RuntimeError(
                f"Inbound event {provider}/{external_event_id} missing after insert"
            )

        if created:
            logger.info(
                "Webhook event stored",
                extra={
                    "provider": provider,
                    "external_event_id": external_event_id,
                    "event_type": event_type,
                },
            )
        else:
            logger.info(
                "Concurrent webhook delivery resolved to existing row",
                extra={"provider": provider, "external_event_id": external_event_id},
            )
        return event, created

    def find(self, db: Session, provider: str, external_event_id: str) -> Optional[InboundEvent]:
        return (
            db.query(InboundEvent)
            .filter(
                InboundEvent.provider == provider,
                InboundEvent.external_event_id == external_event_id,
            )
            .first()
        )

    def fetch_pending(
        self,
        db: Session,
        providers: Sequence[str],
        limit: Optional[int] = None,
    ) -> List[InboundEvent]:
        """PENDING rows for the given providers in arrival order."""
        if not providers:
            return []
        query = (
            db.query(InboundEvent)
            .filter(
                InboundEvent.status == EventStatus.PENDING.value,
                InboundEvent.provider.in_(list(providers)),
            )
            .order_by(InboundEvent.created_at, InboundEvent.id)
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def claim(self, db: Session, event: InboundEvent) -> bool:
        """
        Atomically move PENDING -> PROCESSING.

        Returns False when another sweeper already claimed the row.
        """
        result = db.execute(
            update(InboundEvent)
            .where(
                InboundEvent.id == event.id,
                InboundEvent.status == EventStatus.PENDING.value,
            )
            .values(status=EventStatus.PROCESSING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        db.refresh(event)
        return True

    def mark_processed(self, db: Session, event: InboundEvent) -> None:
        event.status = EventStatus.PROCESSED.value
        event.processed_at = utcnow()
        event.error_message = None

    def mark_failed(self, db: Session, event: InboundEvent, error: str) -> None:
        event.status = EventStatus.FAILED.value
        event.error_message = error
        event.retry_count = (event.retry_count or 0) + 1

    def requeue_failed(self, db: Session, max_retries: int) -> int:
        """
        FAILED rows below the retry bound go back to PENDING.

        Rows with retry_count >= max_retries stay FAILED for manual inspection.
        """
        result = db.execute(
            update(InboundEvent)
            .where(
                InboundEvent.status == EventStatus.FAILED.value,
                InboundEvent.retry_count < max_retries,
            )
            .values(status=EventStatus.PENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def release_stale_processing(self, db: Session, timeout_seconds: int) -> int:
        """Fail rows left in PROCESSING by a crashed sweeper so they can be retried."""
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        result = db.execute(
            update(InboundEvent)
            .where(
                InboundEvent.status == EventStatus.PROCESSING.value,
                InboundEvent.updated_at < cutoff,
            )
            .values(
                status=EventStatus.FAILED.value,
                error_message="Processing did not finish before the processing timeout",
                retry_count=InboundEvent.retry_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
