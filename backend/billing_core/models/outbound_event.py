"""
Outbound domain event model (transactional outbox).

Rows are written in the same transaction as the business mutation that
caused them, then delivered asynchronously by the outbox publisher.
"""

from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, Index

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, generate_uuid
from billing_core.models.inbound_event import EventStatus


class OutboundEvent(Base, TimestampMixin):
    """One business-significant change waiting to be relayed outward."""

    __tablename__ = "outbound_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    event_type = Column(
        String(100),
        nullable=False,
        comment="Domain event name, e.g. EntitlementsChanged"
    )

    aggregate_type = Column(
        String(100),
        nullable=False,
        comment="Kind of aggregate the event is about, e.g. Tenant"
    )

    aggregate_id = Column(
        String(255),
        nullable=False,
        comment="Identifier of the aggregate"
    )

    payload = Column(JSON, nullable=False, default=dict)

    status = Column(
        String(20),
        nullable=False,
        default=EventStatus.PENDING.value,
    )

    retry_count = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)

    processed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the event was delivered; drives retention cleanup"
    )

    __table_args__ = (
        Index("ix_outbound_events_status_created", "status", "created_at"),
        Index("ix_outbound_events_processed_at", "processed_at"),
    )

    def to_message(self) -> dict:
        """Wire representation handed to delivery sinks."""
        return {
            "id": self.id,
            "eventType": self.event_type,
            "aggregateType": self.aggregate_type,
            "aggregateId": self.aggregate_id,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
