"""Relay of gated chat messages to the downstream chat worker."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from config.settings import settings
from topvoices.errors import ExternalUnavailableError, NotConfiguredError

logger = logging.getLogger(__name__)


class ChatRelay:
    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = settings.CHAT_WEBHOOK_URL if url is None else url
        self.timeout = timeout if timeout is not None else settings.CHAT_WEBHOOK_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, identifier: str | None, message: str, email: str | None = None) -> dict[str, Any]:
        """POST the message downstream and return its JSON reply.

        Any failure raises ``ExternalUnavailableError`` so the caller can
        skip committing usage.
        """
        if not self.url:
            raise NotConfiguredError("Chat service is not configured")

        body = {"threadId": identifier, "email": email, "message": message}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=body)
                resp.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("Chat relay timed out after %ss for %s", self.timeout, identifier)
            raise ExternalUnavailableError("Chat service timed out")
        except httpx.HTTPError as e:
            logger.warning("Chat relay failed for %s: %s", identifier, e)
            raise ExternalUnavailableError("Chat service is unavailable")

        try:
            return resp.json()
        except ValueError:
            return {"response": resp.text}
