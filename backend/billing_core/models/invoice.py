"""
Paid invoice record, written when the provider reports a successful payment.
"""

from sqlalchemy import Column, String, BigInteger, DateTime

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class Invoice(Base, TimestampMixin, TenantScopedMixin):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    provider_invoice_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Invoice id at the billing provider; makes recording idempotent"
    )

    amount_paid = Column(BigInteger, nullable=True, comment="Minor currency units")

    currency = Column(String(10), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
