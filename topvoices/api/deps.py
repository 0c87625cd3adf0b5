"""FastAPI dependencies — services live on ``app.state``, wired at startup."""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request

from config.settings import settings
from topvoices.services.admin import SubscriptionAdmin
from topvoices.services.chat_relay import ChatRelay
from topvoices.services.reconciliation import ReconciliationEngine
from topvoices.services.stripe_webhooks import StripeWebhookHandler
from topvoices.services.usage import UsageGate, UsageMeter
from topvoices.storage.container import Storage


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_meter(request: Request) -> UsageMeter:
    return request.app.state.meter


def get_gate(request: Request) -> UsageGate:
    return request.app.state.gate


def get_admin(request: Request) -> SubscriptionAdmin:
    return request.app.state.admin


def get_relay(request: Request) -> ChatRelay:
    return request.app.state.relay


def get_webhooks(request: Request) -> StripeWebhookHandler:
    return request.app.state.webhooks


def verify_admin_key(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key from request header (timing-safe)."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        raise HTTPException(503, "Admin endpoints disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected_key):
        raise HTTPException(403, "Invalid admin key")
