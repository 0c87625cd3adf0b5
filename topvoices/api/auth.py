"""Register / login — email only, no passwords. Every account starts free."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from topvoices.api.deps import get_admin
from topvoices.services.admin import SubscriptionAdmin

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: Optional[str] = Field(default=None, max_length=200)


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    user, sub = await admin.register(req.email, req.name)
    return {
        "message": "User registered successfully",
        "subscriptionId": sub.id,
        "subscriptionType": user.subscription_type,
        "user": {"email": user.email, "name": user.name},
    }


@router.post("/login")
async def login(req: LoginRequest, admin: SubscriptionAdmin = Depends(get_admin)):
    user, created = await admin.login(req.email)
    body = {
        "message": "User registered successfully" if created else "Login successful",
        "subscriptionId": user.subscription_id,
        "subscriptionType": user.subscription_type,
        "user": {"email": user.email, "name": user.name},
    }
    return JSONResponse(status_code=201 if created else 200, content=body)
