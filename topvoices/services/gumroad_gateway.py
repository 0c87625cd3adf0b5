"""
Gumroad Gateway
---
Read and enroll Gumroad subscribers for the admin linking flow. Gumroad
grants are never re-verified during reconciliation; this client only runs
when an operator links an account by hand.

Like ``StripeGateway``, calls never raise on provider trouble and come back
as ``GatewayResult(success=False, ...)`` instead.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx

from config.settings import settings
from topvoices.models import utcnow
from topvoices.services.stripe_gateway import GatewayResult

logger = logging.getLogger(__name__)

# Sales older than this are not considered when looking a buyer up
SALES_LOOKBACK = timedelta(days=365)
MAX_SALES_PAGES = 20
DEFAULT_PRICE_CENTS = 900


def normalize_sale(sale: dict[str, Any]) -> dict[str, Any]:
    """Gumroad sale object → the shape stored as a record's provider data."""
    subscription_id = sale.get("subscription_id")
    return {
        "id": f"gumroad_direct_{subscription_id or sale.get('id')}",
        "email": (sale.get("email") or "").strip().lower() or None,
        "active": not sale.get("subscription_ended_at"),
        "subscriptionId": subscription_id,
        "purchaseId": sale.get("id"),
        "productId": sale.get("product_id"),
        "productName": sale.get("product_name"),
        "price": sale.get("price"),
        "currency": sale.get("currency"),
        "subscriptionEndedAt": sale.get("subscription_ended_at"),
        "refunded": bool(sale.get("refunded")),
        "createdAt": sale.get("created_at"),
    }


class GumroadGateway:
    """Async Gumroad client. ``transport`` is injectable for tests."""

    provider = "gumroad"

    def __init__(
        self,
        access_token: str | None = None,
        product_id: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = settings.GUMROAD_ACCESS_TOKEN if access_token is None else access_token
        self.product_id = settings.GUMROAD_PRODUCT_ID if product_id is None else product_id
        self.api_base = (api_base or settings.GUMROAD_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GUMROAD_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any] | None, str]:
        """Returns (payload, error). Gumroad reports failures in ``success``."""
        if not self.configured:
            logger.error("Gumroad access token is missing")
            return None, "Gumroad configuration is missing"

        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.access_token}"},
            ) as client:
                resp = await client.request(method, path, params=params, data=data)
        except httpx.TimeoutException:
            logger.warning("Gumroad %s %s timed out after %ss", method, path, self.timeout)
            return None, "Gumroad request timed out"
        except httpx.HTTPError as e:
            logger.warning("Gumroad %s %s failed: %s", method, path, e)
            return None, "Could not reach Gumroad"

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("Gumroad %s %s → %s with a non-object body", method, path, resp.status_code)
            return None, f"Gumroad returned {resp.status_code}"

        if resp.status_code >= 400 or not payload.get("success"):
            message = payload.get("message") or f"Gumroad returned {resp.status_code}"
            logger.warning("Gumroad %s %s → %s: %s", method, path, resp.status_code, message)
            return None, str(message)
        return payload, ""

    async def list_subscriptions(self) -> GatewayResult:
        """Active subscription sales of the configured product from the last year."""
        params: dict[str, Any] = {
            "after": (utcnow() - SALES_LOOKBACK).date().isoformat(),
            "subscription_active": "true",
        }
        if self.product_id:
            params["product_id"] = self.product_id

        sales: list[dict[str, Any]] = []
        for _ in range(MAX_SALES_PAGES):
            payload, error = await self._request("GET", "/sales", params=params)
            if payload is None:
                return GatewayResult.failure(error or "Failed to get Gumroad subscriptions")
            sales.extend(normalize_sale(s) for s in payload.get("sales") or [])
            page_key = payload.get("next_page_key")
            if not page_key:
                break
            params = {**params, "page_key": page_key}
        else:
            logger.warning("Stopped listing Gumroad sales after %d pages", MAX_SALES_PAGES)

        logger.info("Fetched %d Gumroad subscription sales", len(sales))
        return GatewayResult(success=True, subscriptions=sales)

    async def find_by_email(self, email: str) -> GatewayResult:
        """The buyer's active subscription, if any; ``subscription`` is None otherwise."""
        email = (email or "").strip().lower()
        result = await self.list_subscriptions()
        if not result.success:
            return result
        match = next((s for s in result.subscriptions if s["email"] == email and s["active"]), None)
        return GatewayResult(success=True, subscription=match)

    async def create_subscriber(
        self, email: str, product_id: str | None = None, price_cents: int = DEFAULT_PRICE_CENTS,
    ) -> GatewayResult:
        product_id = product_id or self.product_id
        if not product_id:
            return GatewayResult.failure("Gumroad product ID is required")
        logger.info("Creating Gumroad subscriber %s on product %s", email, product_id)
        payload, error = await self._request(
            "POST",
            f"/products/{product_id}/subscribers",
            data={"email": email, "price_cents": price_cents},
        )
        if payload is None:
            return GatewayResult.failure(error or "Failed to create Gumroad subscriber")
        return GatewayResult(success=True, subscription=payload.get("subscriber") or {})
