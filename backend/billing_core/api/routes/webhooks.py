"""
Billing provider webhook endpoint.

SECURITY: the signature is verified before anything is stored.

Responses:
- 200 for every verified delivery, duplicates included
- 401 when the signature check fails
- 400 when a verified body cannot be parsed
- 404 for providers that are not configured
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from billing_core.api.schemas import WebhookReceiptResponse
from billing_core.config.settings import BillingSettings, get_settings
from billing_core.database.session import get_db_session
from billing_core.errors import UnknownProviderError, WebhookSignatureError
from billing_core.webhooks.receiver import WebhookReceiver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookReceiptResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db_session),
    settings: BillingSettings = Depends(get_settings),
):
    receiver = WebhookReceiver(db, settings)

    try:
        config = receiver.provider_config(provider)
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    body = await request.body()
    result = receiver.receive(provider, body, request.headers.get(config.signature_header))

    if not result.accepted:
        if result.error == WebhookSignatureError.code:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook body")

    return WebhookReceiptResponse(status=result.status, eventId=result.event_id)
