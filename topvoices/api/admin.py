"""Admin API endpoints — protected by the X-Admin-Key header."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from topvoices.api.deps import get_admin, get_meter, get_storage, verify_admin_key
from topvoices.services.admin import SubscriptionAdmin
from topvoices.services.sweep import scan_and_repair
from topvoices.services.usage import UsageMeter
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_key)],
)


class ManualSubscriptionRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    # Stored in 50-character columns
    type: str = Field(default="premium", max_length=50)
    source: str = Field(default="manual", max_length=50)
    notes: Optional[str] = Field(default=None, max_length=2000)


class StripeLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(min_length=3, max_length=320)
    stripe_subscription_id: str = Field(alias="stripeSubscriptionId", min_length=1)
    stripe_customer_id: Optional[str] = Field(default=None, alias="stripeCustomerId")
    notes: Optional[str] = None


class GumroadLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(min_length=3, max_length=320)
    gumroad_subscription_id: Optional[str] = Field(default=None, alias="gumroadSubscriptionId")
    gumroad_product_id: Optional[str] = Field(default=None, alias="gumroadProductId")
    notes: Optional[str] = Field(default=None, max_length=2000)


class UserUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=200)
    active: Optional[bool] = None
    subscription_type: Optional[str] = Field(default=None, alias="subscriptionType", min_length=1, max_length=50)


# ── Sweep ──

@router.post("/scan-subscriptions")
async def scan_subscriptions(storage: Storage = Depends(get_storage)):
    """Recreate subscription records that users or the email index point at."""
    report = await scan_and_repair(storage)
    return report.to_response()


# ── Subscriptions ──

@router.get("/subscriptions")
async def list_subscriptions(admin: SubscriptionAdmin = Depends(get_admin)):
    subs = await admin.list_subscriptions()
    return {"subscriptions": [s.to_record() for s in subs], "total": len(subs)}


@router.post("/subscriptions/manual")
async def add_manual_subscription(req: ManualSubscriptionRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    sub = await admin.add_manual_subscription(req.email, req.type, req.source, req.notes)
    return {"message": "Manual subscription added successfully", "subscription": sub.to_record()}


@router.post("/subscriptions/stripe")
async def link_stripe_subscription(req: StripeLinkRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    sub = await admin.link_stripe_subscription(
        req.email, req.stripe_subscription_id, req.stripe_customer_id, req.notes,
    )
    return {
        "message": "Stripe subscription linked successfully",
        "subscription": sub.to_record(),
        "stripeVerified": True,
    }


@router.post("/subscriptions/gumroad")
async def link_gumroad_subscription(req: GumroadLinkRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    sub = await admin.link_gumroad_subscription(
        req.email, req.gumroad_subscription_id, req.gumroad_product_id, req.notes,
    )
    return {
        "message": "Gumroad subscription added successfully",
        "subscription": sub.to_record(),
        "gumroadStatus": sub.source,
    }


@router.post("/subscriptions/{subscription_id}/activate")
async def activate_subscription(subscription_id: str, admin: SubscriptionAdmin = Depends(get_admin)):
    sub = await admin.activate_subscription(subscription_id)
    return {"message": "Subscription activated successfully", "subscription": sub.to_record()}


@router.post("/subscriptions/{subscription_id}/deactivate")
async def deactivate_subscription(subscription_id: str, admin: SubscriptionAdmin = Depends(get_admin)):
    sub = await admin.deactivate_subscription(subscription_id)
    return {"message": "Subscription deactivated successfully", "subscription": sub.to_record()}


@router.delete("/subscriptions/{subscription_id}")
async def delete_subscription(subscription_id: str, admin: SubscriptionAdmin = Depends(get_admin)):
    deleted = await admin.delete_subscription(subscription_id)
    if not deleted:
        return {"message": "Subscription not found or already deleted"}
    return {"message": "Subscription deleted successfully"}


@router.get("/stripe/subscriptions")
async def list_stripe_subscriptions(admin: SubscriptionAdmin = Depends(get_admin)):
    """Everything Stripe knows about, for cross-checking local mirrors."""
    data = await admin.list_provider_subscriptions()
    return {"subscriptions": data, "total": len(data)}


# ── Users ──

@router.get("/users")
async def list_users(admin: SubscriptionAdmin = Depends(get_admin)):
    users = await admin.list_users()
    return {"users": [u.to_record() for u in users], "total": len(users)}


@router.get("/users/{email}")
async def get_user(email: str, admin: SubscriptionAdmin = Depends(get_admin)):
    user = await admin.get_user(email)
    return user.to_record()


@router.put("/users/{email}")
async def update_user(email: str, req: UserUpdateRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    user = await admin.update_user(email, req.name, req.active, req.subscription_type)
    return {"message": "User updated successfully", "user": user.to_record()}


@router.post("/users/{email}/activate")
async def activate_user(email: str, admin: SubscriptionAdmin = Depends(get_admin)):
    user = await admin.activate_user(email)
    return {"message": "User activated successfully", "user": user.to_record()}


@router.post("/users/{email}/deactivate")
async def deactivate_user(email: str, admin: SubscriptionAdmin = Depends(get_admin)):
    user = await admin.deactivate_user(email)
    return {"message": "User deactivated successfully", "user": user.to_record()}


@router.delete("/users/{email}")
async def delete_user(email: str, admin: SubscriptionAdmin = Depends(get_admin)):
    await admin.delete_user(email)
    return {"message": "User deleted successfully"}


# ── Reporting / usage ──

@router.get("/stats")
async def stats(admin: SubscriptionAdmin = Depends(get_admin)):
    return await admin.stats()


@router.delete("/usage/{identifier}")
async def reset_usage(identifier: str, meter: UsageMeter = Depends(get_meter)):
    await meter.reset_usage(identifier)
    return {"message": "Usage reset", "identifier": identifier}
