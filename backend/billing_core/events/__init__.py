"""Domain events raised by mutating services and their dispatcher."""

from billing_core.events.domain import (
    DomainEvent,
    EntitlementsChanged,
    InvoicePaid,
    PaymentFailed,
)
from billing_core.events.dispatcher import EventDispatcher, build_event_dispatcher

__all__ = [
    "DomainEvent",
    "EntitlementsChanged",
    "InvoicePaid",
    "PaymentFailed",
    "EventDispatcher",
    "build_event_dispatcher",
]
