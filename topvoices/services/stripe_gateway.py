"""
Stripe Entitlement Gateway
---
Thin façade over Stripe's subscription and customer REST API. Normalizes
Stripe objects into the shape the reconciliation engine works with.

No call here raises on provider trouble: network errors, timeouts, auth
failures and 404s all come back as ``GatewayResult(success=False, ...)``.
Callers treat that as "could not confirm", never as "confirmed inactive".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)

# Statuses that still entitle the customer to premium
ACTIVE_STATUSES = frozenset({"active", "trialing"})


@dataclass
class GatewayResult:
    success: bool
    message: str = ""
    subscription: Optional[dict[str, Any]] = None
    subscriptions: list[dict[str, Any]] = field(default_factory=list)
    customer: Optional[dict[str, Any]] = None
    data: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def failure(cls, message: str) -> "GatewayResult":
        return cls(success=False, message=message)


def _ts_to_iso(ts: int | None) -> str | None:
    """Convert a Stripe epoch-seconds timestamp to ISO 8601."""
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


def _customer_id(customer: Any) -> str | None:
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def normalize_subscription(sub: dict[str, Any]) -> dict[str, Any]:
    """Stripe subscription object → core shape."""
    status = sub.get("status", "")
    normalized = {
        "id": sub.get("id"),
        "status": status,
        "active": status in ACTIVE_STATUSES,
        "currentPeriodEnd": _ts_to_iso(sub.get("current_period_end")),
        "customerId": _customer_id(sub.get("customer")),
        "canceledAt": _ts_to_iso(sub.get("canceled_at")),
    }
    if sub.get("trial_start"):
        normalized["trialStart"] = _ts_to_iso(sub["trial_start"])
    if sub.get("trial_end"):
        normalized["trialEnd"] = _ts_to_iso(sub["trial_end"])
    return normalized


def _listing_entry(sub: dict[str, Any]) -> dict[str, Any]:
    """Richer row for admin listings (customer expanded, plan details)."""
    customer = sub.get("customer")
    items = (sub.get("items") or {}).get("data") or [{}]
    price = items[0].get("price") or {}
    entry = normalize_subscription(sub)
    entry.update({
        "customerEmail": customer.get("email") if isinstance(customer, dict) else None,
        "customerName": customer.get("name") if isinstance(customer, dict) else None,
        "currentPeriodStart": _ts_to_iso(sub.get("current_period_start")),
        "created": _ts_to_iso(sub.get("created")),
        "planId": price.get("id"),
        "planNickname": price.get("nickname"),
        "planAmount": price.get("unit_amount"),
        "planCurrency": price.get("currency"),
        "planInterval": (price.get("recurring") or {}).get("interval"),
        "cancelAtPeriodEnd": sub.get("cancel_at_period_end", False),
        "endedAt": _ts_to_iso(sub.get("ended_at")),
        "metadata": sub.get("metadata") or {},
    })
    return entry


class StripeGateway:
    """Async Stripe client. ``transport`` is injectable for tests."""

    provider = "stripe"

    def __init__(
        self,
        secret_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = settings.STRIPE_SECRET_KEY if secret_key is None else secret_key
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.STRIPE_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def _request(
        self, method: str, path: str, params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    ) -> tuple[dict[str, Any] | None, str]:
        """Returns (payload, error). Exactly one of them is meaningful."""
        if not self.configured:
            logger.error("Stripe secret key is missing")
            return None, "Stripe configuration is missing"

        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.secret_key}"},
            ) as client:
                resp = await client.request(method, path, params=params)
        except httpx.TimeoutException:
            logger.warning("Stripe %s %s timed out after %ss", method, path, self.timeout)
            return None, "Stripe request timed out"
        except httpx.HTTPError as e:
            logger.warning("Stripe %s %s failed: %s", method, path, e)
            return None, "Could not reach Stripe"

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code >= 400:
            error = payload.get("error") if isinstance(payload, dict) else None
            message = (
                (error.get("message") if isinstance(error, dict) else None)
                or f"Stripe returned {resp.status_code}"
            )
            logger.warning("Stripe %s %s → %s: %s", method, path, resp.status_code, message)
            return None, message
        if not isinstance(payload, dict):
            logger.warning("Stripe %s %s returned a non-object body", method, path)
            return None, "Unexpected response from Stripe"
        return payload, ""

    # ── Subscriptions ──

    async def verify_by_id(self, provider_subscription_id: str) -> GatewayResult:
        """Fetch one subscription and report whether it is live."""
        if not provider_subscription_id:
            return GatewayResult.failure("Subscription ID is required")
        logger.info("Verifying Stripe subscription %s", provider_subscription_id)
        payload, error = await self._request("GET", f"/subscriptions/{provider_subscription_id}")
        if payload is None:
            return GatewayResult.failure(error or "Failed to verify subscription")
        return GatewayResult(success=True, subscription=normalize_subscription(payload))

    async def list_by_customer(self, customer_id: str) -> GatewayResult:
        payload, error = await self._request(
            "GET", "/subscriptions", params={"customer": customer_id, "status": "all", "limit": 100},
        )
        if payload is None:
            return GatewayResult.failure(error or "Failed to get subscriptions")
        return GatewayResult(
            success=True,
            subscriptions=[normalize_subscription(s) for s in payload.get("data", [])],
        )

    async def list_by_email(self, email: str) -> GatewayResult:
        """Look customers up by email, then union all their subscriptions."""
        if not email:
            return GatewayResult.failure("Email is required")
        payload, error = await self._request(
            "GET", "/customers", params={"email": email, "limit": 100},
        )
        if payload is None:
            return GatewayResult.failure(error or "Failed to look up customer")

        customers = payload.get("data", [])
        if not customers:
            return GatewayResult(success=True)

        subscriptions: list[dict[str, Any]] = []
        for customer in customers:
            result = await self.list_by_customer(customer["id"])
            if not result.success:
                return GatewayResult.failure(result.message)
            subscriptions.extend(result.subscriptions)

        first = customers[0]
        return GatewayResult(
            success=True,
            subscriptions=subscriptions,
            customer={"id": first.get("id"), "email": first.get("email"), "name": first.get("name")},
        )

    async def list_all(self, status: str = "all", page_limit: int = 100) -> GatewayResult:
        """Every subscription, paging through with ``starting_after``.

        For admin/batch paths only; never called on the reconciliation hot path.
        """
        data: list[dict[str, Any]] = []
        starting_after: str | None = None
        while True:
            params: list[tuple[str, Any]] = [
                ("limit", page_limit), ("status", status), ("expand[]", "data.customer"),
            ]
            if starting_after:
                params.append(("starting_after", starting_after))

            payload, error = await self._request("GET", "/subscriptions", params=params)
            if payload is None:
                result = GatewayResult.failure(error or "Failed to get all subscriptions")
                result.data = data
                return result

            page = payload.get("data", [])
            data.extend(_listing_entry(s) for s in page)
            if not payload.get("has_more") or not page:
                break
            starting_after = page[-1]["id"]

        return GatewayResult(success=True, data=data)

    async def cancel(self, provider_subscription_id: str) -> GatewayResult:
        logger.info("Cancelling Stripe subscription %s", provider_subscription_id)
        payload, error = await self._request("DELETE", f"/subscriptions/{provider_subscription_id}")
        if payload is None:
            return GatewayResult.failure(error or "Failed to cancel subscription")
        return GatewayResult(success=True, subscription=normalize_subscription(payload))

    # ── Customers ──

    async def get_customer(self, customer_id: str) -> GatewayResult:
        payload, error = await self._request("GET", f"/customers/{customer_id}")
        if payload is None:
            return GatewayResult.failure(error or "Failed to get customer")
        return GatewayResult(
            success=True,
            customer={
                "id": payload.get("id"),
                "email": payload.get("email"),
                "name": payload.get("name"),
                "created": _ts_to_iso(payload.get("created")),
            },
        )
