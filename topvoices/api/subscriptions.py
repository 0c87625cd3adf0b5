"""Entitlement check endpoints — the ones the LinkedIn assistant calls."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config.settings import settings
from topvoices.api.deps import get_engine, get_storage
from topvoices.errors import ErrorKind
from topvoices.services.reconciliation import ReconciliationEngine, Resolution
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    email: Optional[str] = None


def _error(status: int, kind: ErrorKind, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={
        "error": kind.value,
        "message": message,
        "subscriptionUrl": settings.SUBSCRIPTION_URL,
    })


def _respond(resolution: Resolution) -> JSONResponse | dict:
    if resolution.error is ErrorKind.INVALID_INPUT:
        return _error(400, resolution.error, resolution.message)
    if resolution.error is ErrorKind.NOT_FOUND:
        return _error(404, resolution.error, resolution.message)

    body = resolution.decision.to_response()
    if not resolution.confirmed:
        body["message"] = resolution.message
        body["subscriptionUrl"] = settings.SUBSCRIPTION_URL
    return body


@router.get("/verify")
async def verify_subscription(
    subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Resolve entitlement for a subscription id."""
    if not subscription_id:
        return _error(400, ErrorKind.INVALID_INPUT, "Subscription ID is required")
    return _respond(await engine.resolve_entitlement(subscription_id=subscription_id))


@router.get("/check/{email}")
async def check_by_email(email: str, engine: ReconciliationEngine = Depends(get_engine)):
    return _respond(await engine.resolve_entitlement(email=email))


@router.post("/check")
async def check(req: CheckRequest, engine: ReconciliationEngine = Depends(get_engine)):
    """Resolve by ``subscriptionId`` when given, else by ``email``."""
    if not req.subscription_id and not req.email:
        return _error(400, ErrorKind.INVALID_INPUT, "Email or subscription ID is required")
    if req.subscription_id:
        return _respond(await engine.resolve_entitlement(subscription_id=req.subscription_id))
    return _respond(await engine.resolve_entitlement(email=req.email))


@router.get("/{subscription_id}")
async def get_subscription_status(subscription_id: str, storage: Storage = Depends(get_storage)):
    """Stored status, no provider calls."""
    sub = await storage.subscriptions.get(subscription_id)
    if sub is None:
        return _error(404, ErrorKind.NOT_FOUND, "Subscription not found")
    return {
        "subscriptionId": sub.id,
        "active": sub.active,
        "type": sub.type,
        "source": sub.source,
        "email": sub.email,
        "updatedAt": sub.updated_at.isoformat(),
    }
