"""
Outbox publisher.

One sweep tick delivers at most batch_size PENDING events, oldest first.
Rows beyond the batch wait for the next tick. Every event is claimed,
delivered and marked in its own transactions, so one failing delivery never
affects the rest of the batch.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from billing_core.outbox.sinks import DeliverySink
from billing_core.outbox.store import OutboxStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


@dataclass
class PublishStats:
    fetched: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    deadline_reached: bool = False

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "delivered": self.delivered,
            "failed": self.failed,
            "skipped": self.skipped,
            "deadline_reached": self.deadline_reached,
        }


class OutboxPublisher:
    def __init__(
        self,
        db_session: Session,
        sink: DeliverySink,
        store: Optional[OutboxStore] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.db = db_session
        self.sink = sink
        self.store = store or OutboxStore()
        self.batch_size = batch_size

    def publish_pending(self, deadline: Optional[float] = None) -> PublishStats:
        """
        Deliver up to batch_size PENDING events.

        Args:
            deadline: time.monotonic() value after which no new event is started
        """
        stats = PublishStats()
        events = self.store.fetch_pending(self.db, limit=self.batch_size)
        stats.fetched = len(events)
        # Release the read transaction before delivering.
        self.db.commit()

        for event in events:
            if deadline is not None and time.monotonic() >= deadline:
                stats.deadline_reached = True
                logger.warning(
                    "Outbox sweep deadline reached; remaining events left for next tick",
                    extra={"delivered": stats.delivered, "remaining": stats.fetched - stats.delivered - stats.failed},
                )
                break

            if not self.store.claim(self.db, event):
                self.db.rollback()
                stats.skipped += 1
                continue
            self.db.commit()

            try:
                self.sink.deliver(event)
                self.store.mark_processed(self.db, event)
                self.db.commit()
                stats.delivered += 1
            except Exception as e:
                self.db.rollback()
                self.store.mark_failed(self.db, event, str(e) or type(e).__name__)
                self.db.commit()
                stats.failed += 1
                logger.error(
                    "Outbound event delivery failed",
                    extra={
                        "outbound_event_id": event.id,
                        "event_type": event.event_type,
                        "retry_count": event.retry_count,
                        "error": str(e),
                    },
                    exc_info=True,
                )

        if stats.fetched:
            logger.info("Outbox sweep complete", extra=stats.to_dict())
        return stats
