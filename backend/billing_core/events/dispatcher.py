"""
Synchronous, in-transaction event dispatcher.

Subscribers run in the order they were registered, on the caller's session,
before the caller commits. A subscriber exception propagates to the caller,
which rolls back the mutation together with every side effect already
applied by earlier subscribers.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Type

from sqlalchemy.orm import Session

from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.events.domain import DomainEvent, EntitlementsChanged, InvoicePaid, PaymentFailed
from billing_core.outbox.store import OutboxStore

logger = logging.getLogger(__name__)

Subscriber = Callable[[Session, DomainEvent], None]


class EventDispatcher:
    def __init__(self):
        self._subscribers: Dict[Type[DomainEvent], List[Subscriber]] = defaultdict(list)

    def subscribe(self, event_cls: Type[DomainEvent], subscriber: Subscriber) -> None:
        self._subscribers[event_cls].append(subscriber)

    def dispatch(self, db: Session, events: Iterable[DomainEvent]) -> None:
        for event in events:
            subscribers = self._subscribers.get(type(event), [])
            if not subscribers:
                logger.debug("No subscribers for event", extra={"event_type": event.event_type})
            for subscriber in subscribers:
                subscriber(db, event)


def build_event_dispatcher(
    ledger: EntitlementVersionLedger,
    outbox: OutboxStore,
) -> EventDispatcher:
    """
    Standard wiring.

    EntitlementsChanged bumps the ledger first, then records an outbound
    event carrying the new version. Billing notices only reach the outbox.
    """
    dispatcher = EventDispatcher()

    def bump_version(db: Session, event: DomainEvent) -> None:
        ledger.bump(db, event.tenant_id)

    def publish_entitlements_changed(db: Session, event: DomainEvent) -> None:
        payload = event.to_payload()
        payload["entitlementVersion"] = ledger.current_version(db, event.tenant_id)
        outbox.publish(db, event.event_type, event.aggregate_type, event.tenant_id, payload)

    def publish_notice(db: Session, event: DomainEvent) -> None:
        outbox.publish(db, event.event_type, event.aggregate_type, event.tenant_id, event.to_payload())

    dispatcher.subscribe(EntitlementsChanged, bump_version)
    dispatcher.subscribe(EntitlementsChanged, publish_entitlements_changed)
    dispatcher.subscribe(InvoicePaid, publish_notice)
    dispatcher.subscribe(PaymentFailed, publish_notice)
    return dispatcher
