"""Stripe webhook endpoint."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from config.settings import settings
from topvoices.api.deps import get_webhooks
from topvoices.services.stripe_webhooks import StripeWebhookHandler, verify_stripe_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/stripe", tags=["stripe"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    webhooks: StripeWebhookHandler = Depends(get_webhooks),
):
    """Handle Stripe subscription lifecycle events.

    Handles:
    - customer.subscription.created → mirror record + user upgraded
    - customer.subscription.updated → mirror status refreshed
    - customer.subscription.deleted → mirror marked canceled
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(500, "Stripe webhook secret not configured")

    body = await request.body()
    event = verify_stripe_signature(body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    event_type = await webhooks.handle(event)
    return {"received": True, "type": event_type}
