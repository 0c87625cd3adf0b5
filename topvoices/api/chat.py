"""Usage-gated chat relay and usage lookup."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from topvoices.api.deps import get_gate, get_meter, get_relay
from topvoices.services.chat_relay import ChatRelay
from topvoices.services.usage import UsageGate, UsageMeter, next_reset_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["chat"])


class Sender(BaseModel):
    email: Optional[str] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: Optional[str] = Field(default=None, alias="threadId")
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    email: Optional[str] = None
    sender: Optional[Sender] = None
    message: str = Field(default="", max_length=10_000)

    def identity(self) -> tuple[Optional[str], Optional[str]]:
        """(identifier, email): chat id first, then thread id, then email."""
        if self.chat_id:
            return self.chat_id, self.sender.email if self.sender else self.email
        if self.thread_id:
            return self.thread_id, self.email
        return self.email, self.email


@router.post("/chat")
async def chat(
    req: ChatRequest,
    request: Request,
    gate: UsageGate = Depends(get_gate),
    relay: ChatRelay = Depends(get_relay),
):
    identifier, email = req.identity()
    decision = await gate.check(
        identifier, req.message, email=email,
        endpoint=request.url.path, method=request.method,
    )
    if not decision.allowed:
        return JSONResponse(status_code=429, content=decision.limit_response())

    reply = await relay.send(identifier, req.message, email=email)

    body: dict[str, Any] = {"response": reply}
    if decision.ticket is not None:
        record = await decision.ticket.commit()
        body["usage"] = {"current": record.message_count, "limit": decision.limit}
    return body


@router.get("/usage/{identifier}")
async def get_usage(identifier: str, meter: UsageMeter = Depends(get_meter)):
    usage = await meter.get_monthly_usage(identifier)
    return {
        **usage.to_record(),
        "limit": meter.limit,
        "remaining": max(meter.limit - usage.message_count, 0),
        "resetDate": next_reset_date(),
    }
