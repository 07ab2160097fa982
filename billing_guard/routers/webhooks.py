"""
Stripe webhook receiver.

POST /api/webhooks/stripe — signature-verified subscription events.
    created / updated   → tier sync for paid projects
    deleted             → cancellation
    invoice failures    → logged
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from billing_guard.routers.deps import get_settings_service
from billing_guard.services.payment_processor import (
    HANDLED_WEBHOOK_EVENTS,
    PaymentProcessor,
    get_payment_processor,
)
from billing_guard.services.settings_service import BillingSettingsService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    processor: PaymentProcessor = Depends(get_payment_processor),
    service: BillingSettingsService = Depends(get_settings_service),
):
    payload = await request.body()
    event = processor.parse_webhook(payload, stripe_signature)

    if event.type not in HANDLED_WEBHOOK_EVENTS:
        logger.info("Unhandled Stripe event type: %s", event.type)
        return {"received": True}

    logger.info(
        "Stripe event %s: customer=%s subscription=%s status=%s",
        event.type, event.customer_ref, event.subscription_ref, event.status,
    )
    service.apply_webhook_event(event)
    return {"received": True}
