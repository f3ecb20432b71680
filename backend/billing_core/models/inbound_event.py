"""
Inbound provider event model.

One row per externally delivered event. The (provider, external_event_id)
pair is the idempotency key: a redelivery never creates a second row.
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    DateTime,
    JSON,
    UniqueConstraint,
    Index,
)

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, generate_uuid


class EventStatus(str, enum.Enum):
    """Processing lifecycle shared by inbound and outbound events."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class InboundEvent(Base, TimestampMixin):
    """A webhook delivery from a billing provider, stored before processing."""

    __tablename__ = "inbound_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    provider = Column(
        String(50),
        nullable=False,
        comment="Billing provider name, e.g. stripe"
    )

    external_event_id = Column(
        String(255),
        nullable=False,
        comment="Event id assigned by the provider"
    )

    event_type = Column(
        String(255),
        nullable=False,
        comment="Provider event type, e.g. customer.subscription.updated"
    )

    raw_payload = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="Event payload as delivered"
    )

    status = Column(
        String(20),
        nullable=False,
        default=EventStatus.PENDING.value,
        comment="PENDING, PROCESSING, PROCESSED or FAILED"
    )

    retry_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Failed processing attempts"
    )

    error_message = Column(
        Text,
        nullable=True,
        comment="Last processing error"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When processing finished successfully"
    )

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "external_event_id",
            name="uq_inbound_events_provider_external_id",
        ),
        Index("ix_inbound_events_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<InboundEvent(id={self.id}, provider={self.provider}, "
            f"external_event_id={self.external_event_id}, status={self.status})>"
        )
