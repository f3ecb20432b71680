"""
Domain events.

Services return these from mutating calls instead of triggering side
effects themselves. The caller hands them to an EventDispatcher inside the
same transaction as the mutation.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional


@dataclass(frozen=True)
class DomainEvent:
    event_type: ClassVar[str] = "DomainEvent"
    aggregate_type: ClassVar[str] = "Tenant"

    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"tenantId": self.tenant_id}


@dataclass(frozen=True)
class EntitlementsChanged(DomainEvent):
    """Something that feeds a tenant's resolved entitlements has changed."""

    event_type: ClassVar[str] = "EntitlementsChanged"

    reason: str = "unspecified"
    plan: Optional[str] = None
    status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "tenantId": self.tenant_id,
            "plan": self.plan,
            "status": self.status,
            "reason": self.reason,
        }
        payload.update(self.details)
        return payload


@dataclass(frozen=True)
class InvoicePaid(DomainEvent):
    event_type: ClassVar[str] = "InvoicePaid"

    provider_invoice_id: str = ""
    amount_paid: Optional[int] = None
    currency: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "invoiceId": self.provider_invoice_id,
            "amountPaid": self.amount_paid,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    event_type: ClassVar[str] = "PaymentFailed"

    provider_invoice_id: str = ""
    attempt_count: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "invoiceId": self.provider_invoice_id,
            "attemptCount": self.attempt_count,
        }
