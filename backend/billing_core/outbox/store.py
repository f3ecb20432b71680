"""
Outbox store.

publish() only adds a row to the caller's session; it never commits. The
outbound event therefore commits or rolls back together with the business
mutation that produced it.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from billing_core.models.base import generate_uuid, utcnow
from billing_core.models.inbound_event import EventStatus
from billing_core.models.outbound_event import OutboundEvent

logger = logging.getLogger(__name__)


class OutboxStore:
    def publish(
        self,
        db: Session,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: Dict[str, Any],
    ) -> OutboundEvent:
        event = OutboundEvent(
            id=generate_uuid(),
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
            status=EventStatus.PENDING.value,
            retry_count=0,
        )
        db.add(event)
        db.flush()

        logger.info(
            "Outbound event recorded",
            extra={
                "outbound_event_id": event.id,
                "event_type": event_type,
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate_id,
            },
        )
        return event

    def fetch_pending(self, db: Session, limit: Optional[int] = None) -> List[OutboundEvent]:
        query = (
            db.query(OutboundEvent)
            .filter(OutboundEvent.status == EventStatus.PENDING.value)
            .order_by(OutboundEvent.created_at, OutboundEvent.id)
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def claim(self, db: Session, event: OutboundEvent) -> bool:
        """
        Move a PENDING row to PROCESSING.

        Returns False when another publisher claimed the row first.
        """
        result = db.execute(
            update(OutboundEvent)
            .where(
                OutboundEvent.id == event.id,
                OutboundEvent.status == EventStatus.PENDING.value,
            )
            .values(status=EventStatus.PROCESSING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        db.refresh(event)
        return True

    def mark_processed(self, db: Session, event: OutboundEvent) -> None:
        event.status = EventStatus.PROCESSED.value
        event.processed_at = utcnow()
        event.error_message = None

    def mark_failed(self, db: Session, event: OutboundEvent, error: str) -> None:
        event.status = EventStatus.FAILED.value
        event.error_message = error
        event.retry_count = (event.retry_count or 0) + 1

    def requeue_failed(self, db: Session, max_retries: int) -> int:
        """
        FAILED rows below the retry bound go back to PENDING.

        Rows at or above max_retries stay FAILED for manual inspection.
        """
        result = db.execute(
            update(OutboundEvent)
            .where(
                OutboundEvent.status == EventStatus.FAILED.value,
                OutboundEvent.retry_count < max_retries,
            )
            .values(status=EventStatus.PENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def release_stale_processing(self, db: Session, timeout_seconds: int) -> int:
        """Fail rows stuck in PROCESSING, e.g. after a crash mid-delivery."""
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        result = db.execute(
            update(OutboundEvent)
            .where(
                OutboundEvent.status == EventStatus.PROCESSING.value,
                OutboundEvent.updated_at < cutoff,
            )
            .values(
                status=EventStatus.FAILED.value,
                error_message="Delivery did not finish before the processing timeout",
                retry_count=OutboundEvent.retry_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_processed_before(self, db: Session, retention_days: int, batch_size: int = 1000) -> int:
        """
        Delete PROCESSED rows delivered more than retention_days ago.

        Rows without processed_at are never deleted. Deletes run in batches,
        committing after each, to keep lock times short.
        """
        cutoff = utcnow() - timedelta(days=retention_days)
        total_deleted = 0

        while True:
            ids = [
                row_id
                for (row_id,) in db.query(OutboundEvent.id)
                .filter(
                    OutboundEvent.status == EventStatus.PROCESSED.value,
                    OutboundEvent.processed_at.isnot(None),
                    OutboundEvent.processed_at < cutoff,
                )
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break

            result = db.execute(
                delete(OutboundEvent)
                .where(OutboundEvent.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            db.commit()
            total_deleted += result.rowcount

            if len(ids) < batch_size:
                break

        return total_deleted
