"""
Stripe webhook ingestion.

Keeps local mirrors of Stripe subscriptions in step with the subscription
lifecycle events Stripe pushes. Reconciliation still re-verifies mirrors
live, so a missed event only delays a correction.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

from topvoices.errors import InvalidInputError
from topvoices.models import (
    Subscription,
    SubscriptionSource,
    User,
    VerificationSnapshot,
    mirror_subscription_id,
    utcnow,
)
from topvoices.services.stripe_gateway import StripeGateway, normalize_subscription
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def verify_stripe_signature(payload: bytes, sig_header: str | None, secret: str) -> dict[str, Any]:
    """Verify Stripe webhook signature and return parsed event.

    Follows Stripe's v1 signature verification:
    1. Extract timestamp and signatures from header
    2. Compute expected signature using HMAC-SHA256
    3. Compare (timing-safe) and check timestamp tolerance
    """
    try:
        elements = dict(item.split("=", 1) for item in (sig_header or "").split(","))
        timestamp = elements.get("t", "")
        signature = elements.get("v1", "")
    except (ValueError, AttributeError):
        raise InvalidInputError("Invalid Stripe signature header")

    if not timestamp or not signature:
        raise InvalidInputError("Missing timestamp or signature")

    try:
        age = abs(time.time() - int(timestamp))
    except ValueError:
        raise InvalidInputError("Invalid Stripe signature header")
    if age > SIGNATURE_TOLERANCE_SECONDS:
        raise InvalidInputError("Webhook timestamp too old")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidInputError("Webhook body is not valid UTF-8")
    signed_payload = f"{timestamp}.{body}"
    expected = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(expected, signature):
        raise InvalidInputError("Invalid signature")

    try:
        return json.loads(payload)
    except ValueError:
        raise InvalidInputError("Webhook body is not valid JSON")


def _provider_data(live: dict[str, Any]) -> dict[str, Any]:
    data = {
        "subscriptionId": live["id"],
        "customerId": live.get("customerId"),
        "status": live.get("status"),
        "currentPeriodEnd": live.get("currentPeriodEnd"),
    }
    if live.get("canceledAt"):
        data["canceledAt"] = live["canceledAt"]
    return data


class StripeWebhookHandler:
    def __init__(self, storage: Storage, gateway: StripeGateway):
        self.storage = storage
        self.gateway = gateway

    async def handle(self, event: dict[str, Any]) -> str:
        """Apply one event. Returns the event type for logging/acks."""
        event_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}
        logger.info("Stripe webhook: %s", event_type)

        if event_type == "customer.subscription.created":
            await self._subscription_created(data)
        elif event_type == "customer.subscription.updated":
            await self._subscription_updated(data)
        elif event_type == "customer.subscription.deleted":
            await self._subscription_deleted(data)
        else:
            logger.debug("Unhandled Stripe event: %s", event_type)
        return event_type

    async def _find_mirror(self, provider_subscription_id: str | None) -> Subscription | None:
        if not provider_subscription_id:
            return None
        mirror = await self.storage.subscriptions.find_by_provider_subscription(provider_subscription_id)
        if mirror is None:
            logger.info("No local subscription for Stripe subscription %s", provider_subscription_id)
        return mirror

    async def _subscription_created(self, data: dict[str, Any]) -> None:
        live = normalize_subscription(data)
        if not live["id"] or not live["customerId"]:
            logger.warning("subscription.created without id or customer")
            return

        result = await self.gateway.get_customer(live["customerId"])
        if not result.success:
            logger.error("Failed to get customer %s: %s", live["customerId"], result.message)
            return
        customer = result.customer or {}
        email = (customer.get("email") or "").strip().lower()
        if not email:
            logger.error("No email found for customer %s", live["customerId"])
            return

        now = utcnow()
        existing = await self.storage.subscriptions.find_by_provider_subscription(live["id"], email)
        sub = Subscription(
            id=existing.id if existing else mirror_subscription_id(self.gateway.provider, email, live["id"]),
            email=email,
            active=live["active"],
            type="premium",
            source=existing.source if existing else SubscriptionSource.STRIPE_WEBHOOK.value,
            provider_subscription_id=live["id"],
            provider_customer_id=live["customerId"],
            provider_data=_provider_data(live),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        await self.storage.subscriptions.set(sub.id, sub)
        logger.info("Subscription %s created for %s", sub.id, email)

        user = await self.storage.users.get(email) or User.new(email, customer.get("name"))
        await self.storage.users.set(email, user.model_copy(update={
            "subscription_id": sub.id,
            "subscription_type": "premium" if sub.active else user.subscription_type,
            "subscription": VerificationSnapshot(
                verified=sub.active, verified_at=now, source=sub.source,
                evidence={"subscriptionId": live["id"], "customerId": live["customerId"]},
            ),
            "updated_at": now,
        }))

    async def _subscription_updated(self, data: dict[str, Any]) -> None:
        live = normalize_subscription(data)
        mirror = await self._find_mirror(live["id"])
        if mirror is None:
            return
        await self.storage.subscriptions.set(mirror.id, mirror.model_copy(update={
            "active": live["active"],
            "provider_data": {**(mirror.provider_data or {}), **_provider_data(live)},
            "updated_at": utcnow(),
        }))
        logger.info("Subscription %s updated (%s)", mirror.id, live["status"])

    async def _subscription_deleted(self, data: dict[str, Any]) -> None:
        mirror = await self._find_mirror(data.get("id"))
        if mirror is None:
            return
        now = utcnow()
        await self.storage.subscriptions.set(mirror.id, mirror.model_copy(update={
            "active": False,
            "status": "canceled",
            "provider_data": {
                **(mirror.provider_data or {}),
                "status": "canceled",
                "canceledAt": now.isoformat(),
            },
            "updated_at": now,
        }))
        logger.info("Subscription %s marked as canceled", mirror.id)

        if mirror.email:
            user = await self.storage.users.get(mirror.email)
            if user is not None and user.subscription_id == mirror.id:
                await self.storage.users.set(mirror.email, user.model_copy(update={
                    "subscription_type": "free",
                    "subscription": VerificationSnapshot(verified=False, verified_at=now),
                    "updated_at": now,
                }))
