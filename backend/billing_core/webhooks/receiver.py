"""
Inbound webhook receipt.

receive() verifies the provider's signature, extracts the event id and type
and stores the event in the inbox. Nothing is stored for a delivery that
fails verification. A verified delivery is accepted even when it is a
duplicate: internal processing failures must never make the provider retry.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from billing_core.config.settings import BillingSettings
from billing_core.errors import MalformedInputError, UnknownProviderError, WebhookSignatureError
from billing_core.webhooks.inbox import WebhookInbox
from billing_core.webhooks.signatures import STRIPE_SIGNATURE_HEADER, verify_stripe_signature

logger = logging.getLogger(__name__)

STATUS_RECEIVED = "received"
STATUS_DUPLICATE = "already_processed"


@dataclass(frozen=True)
class ProviderConfig:
    """How to authenticate and identify deliveries from one provider."""

    name: str
    signature_header: str
    verify: Callable[[bytes, Optional[str]], None]
    extract: Callable[[Dict[str, Any]], Tuple[str, str]]


@dataclass
class ReceiptResult:
    accepted: bool
    status: str
    event_id: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        body = {"status": self.status, "eventId": self.event_id}
        if self.error:
            body["error"] = self.error
        return body


def _extract_stripe_event(payload: Dict[str, Any]) -> Tuple[str, str]:
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedInputError("Webhook body has no event id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedInputError("Webhook body has no event type")
    return event_id, event_type


def build_provider_registry(settings: BillingSettings) -> Dict[str, ProviderConfig]:
    """Providers that are both implemented and enabled in settings."""
    registry = {
        "stripe": ProviderConfig(
            name="stripe",
            signature_header=STRIPE_SIGNATURE_HEADER,
            verify=lambda body, header: verify_stripe_signature(
                body,
                header,
                settings.stripe_webhook_secret,
                tolerance_seconds=settings.stripe_signature_tolerance_seconds,
            ),
            extract=_extract_stripe_event,
        ),
    }
    return {name: config for name, config in registry.items() if settings.is_provider_enabled(name)}


class WebhookReceiver:
    def __init__(
        self,
        db_session: Session,
        settings: BillingSettings,
        inbox: Optional[WebhookInbox] = None,
        providers: Optional[Dict[str, ProviderConfig]] = None,
    ):
        self.db = db_session
        self.settings = settings
        self.inbox = inbox or WebhookInbox()
        self.providers = providers if providers is not None else build_provider_registry(settings)

    def provider_config(self, provider_name: str) -> ProviderConfig:
        config = self.providers.get(provider_name.lower())
        if config is None:
            raise UnknownProviderError(provider_name)
        return config

    def receive(self, provider_name: str, raw_body: bytes, signature_header: Optional[str]) -> ReceiptResult:
        """
        Verify, de-duplicate and store one delivery.

        Returns a rejected result for a bad signature or unparseable body;
        the caller maps those to 401 and 400 respectively.

        Raises:
            UnknownProviderError: provider is not registered
        """
        config = self.provider_config(provider_name)

        try:
            config.verify(raw_body, signature_header)
        except WebhookSignatureError as e:
            logger.warning(
                "Webhook signature rejected",
                extra={"provider": config.name, "reason": e.message},
            )
            return ReceiptResult(accepted=False, status="rejected", error=e.code)

        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise MalformedInputError("Webhook body is not a JSON object")
            event_id, event_type = config.extract(payload)
        except (ValueError, MalformedInputError) as e:
            logger.error(
                "Verified webhook body could not be parsed",
                extra={"provider": config.name, "error": str(e)},
            )
            return ReceiptResult(accepted=False, status="rejected", error=MalformedInputError.code)

        event, created = self.inbox.store_with_status(self.db, config.name, event_id, event_type, payload)
        self.db.commit()

        return ReceiptResult(
            accepted=True,
            status=STATUS_RECEIVED if created else STATUS_DUPLICATE,
            event_id=event.external_event_id,
            duplicate=not created,
        )
