"""
Usage metering and the free-tier message gate.

Counters are keyed by (identifier, calendar month in UTC), so they roll over
on their own at the start of each month. The gate returns an explicit
``GateDecision``; when a request is metered it carries a ``UsageTicket`` the
caller commits once processing has succeeded.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import settings
from topvoices.models import TierPolicy, UsageDetail, UsageRecord
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

MESSAGE_EXCERPT_CHARS = 100

# Billing, help and onboarding messages never consume the allowance
EXEMPT_KEYWORDS = (
    "premium", "subscription", "upgrade", "payment", "billing", "purchase", "buy",
    "stripe", "checkout", "pricing", "plan", "subscribe",
    "features", "what can you do", "help", "commands", "available", "how to use",
    "getting started", "tutorial",
    "welcome", "hello", "hi", "start", "begin",
    "error", "limit", "exceeded", "sorry", "unable",
)

# Still answered after the allowance is used up
PREMIUM_INQUIRY_KEYWORDS = (
    "premium", "subscription", "upgrade", "payment", "pricing", "plan", "subscribe",
    "buy", "purchase", "checkout", "billing", "limit", "unlimited", "pro", "paid",
)


# Too short to match inside other words ("this", "product")
WHOLE_WORD_KEYWORDS = frozenset({"hi", "pro"})


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    """Case-insensitive substring match, whole-word for the short keywords."""
    parts = []
    for keyword in sorted(keywords, key=len, reverse=True):
        escaped = re.escape(keyword)
        parts.append(rf"\b{escaped}\b" if keyword in WHOLE_WORD_KEYWORDS else escaped)
    return re.compile("|".join(parts), re.IGNORECASE)


_EXEMPT_RE = _keyword_pattern(EXEMPT_KEYWORDS)
_PREMIUM_INQUIRY_RE = _keyword_pattern(PREMIUM_INQUIRY_KEYWORDS)


def is_exempt_message(message: Any) -> bool:
    if not message or not isinstance(message, str):
        return False
    return _EXEMPT_RE.search(message) is not None


def is_premium_inquiry(message: Any) -> bool:
    if not message or not isinstance(message, str):
        return False
    return _PREMIUM_INQUIRY_RE.search(message) is not None


def current_month(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


def next_reset_date(now: datetime | None = None) -> str:
    """First day of next month, YYYY-MM-DD."""
    now = now or datetime.now(timezone.utc)
    if now.month == 12:
        return f"{now.year + 1}-01-01"
    return f"{now.year}-{now.month + 1:02d}-01"


def limit_exceeded_message(current: int, limit: int) -> str:
    return (
        "**Monthly Message Limit Reached**\n\n"
        f"You've used {current}/{limit} free messages this month.\n\n"
        "**Upgrade to Premium for:**\n"
        "- Unlimited messages\n"
        "- Advanced LinkedIn insights\n"
        "- Profile analysis\n"
        "- Priority support\n\n"
        "**Ready to upgrade?**\n"
        'Just ask me "How can I upgrade to premium?" and I\'ll help you get started!\n\n'
        "Your message limit will reset next month, or upgrade now for immediate access."
    )


class UsageMeter:
    def __init__(self, storage: Storage, limit: int | None = None):
        self.storage = storage
        self.limit = limit if limit is not None else settings.FREE_MONTHLY_MESSAGE_LIMIT

    async def get_monthly_usage(self, identifier: str) -> UsageRecord:
        """Never None; a month with no traffic reads as zero."""
        month = current_month()
        record = await self.storage.usage.get(identifier, month)
        return record or UsageRecord(identifier=identifier, month=month)

    async def increment_usage(self, identifier: str, metadata: dict[str, Any] | None = None) -> UsageRecord:
        metadata = metadata or {}
        detail = UsageDetail(
            message=(metadata.get("message") or "")[:MESSAGE_EXCERPT_CHARS],
            endpoint=metadata.get("endpoint"),
            method=metadata.get("method"),
            user_email=metadata.get("userEmail") or metadata.get("user_email"),
        )
        record = await self.storage.usage.increment(identifier, current_month(), detail)
        logger.info("Usage tracked for %s: %d this month", identifier, record.message_count)
        return record

    async def has_exceeded_limit(self, identifier: str, limit: int | None = None) -> bool:
        limit = self.limit if limit is None else limit
        usage = await self.get_monthly_usage(identifier)
        return usage.message_count >= limit

    async def reset_usage(self, identifier: str) -> None:
        await self.storage.usage.delete(identifier, current_month())
        logger.info("Usage reset for %s", identifier)


# ── Gate ─────────────────────────────────────────────────────────────────────

class UsageTicket:
    """Pending increment for one request. ``commit`` fires at most once."""

    def __init__(self, meter: UsageMeter, identifier: str, metadata: dict[str, Any]):
        self._meter = meter
        self.identifier = identifier
        self.metadata = metadata
        self._committed = False

    @property
    def committed(self) -> bool:
        return self._committed

    async def commit(self) -> Optional[UsageRecord]:
        if self._committed:
            return None
        self._committed = True
        return await self._meter.increment_usage(self.identifier, self.metadata)


@dataclass
class GateDecision:
    allowed: bool
    reason: str
    identifier: Optional[str] = None
    ticket: Optional[UsageTicket] = None
    current: int = 0
    limit: int = 0
    message: str = ""
    reset_date: Optional[str] = None

    def limit_response(self) -> dict[str, Any]:
        return {
            "error": "Monthly limit exceeded",
            "message": self.message,
            "usage": {"current": self.current, "limit": self.limit, "resetDate": self.reset_date},
        }


class UsageGate:
    """Free-tier gate in front of the chat relay."""

    def __init__(self, meter: UsageMeter, storage: Storage, policy: TierPolicy | None = None):
        self.meter = meter
        self.storage = storage
        self.policy = policy or TierPolicy()

    async def check(
        self,
        identifier: str | None,
        message: str | None,
        email: str | None = None,
        endpoint: str | None = None,
        method: str | None = None,
    ) -> GateDecision:
        if not identifier:
            logger.info("No user identifier found, skipping usage check")
            return GateDecision(allowed=True, reason="unidentified")

        if email:
            user = await self.storage.users.get(email)
            if user is not None and self.policy.is_premium(user.subscription_type):
                logger.info("User %s has premium subscription, skipping usage check", identifier)
                return GateDecision(allowed=True, reason="premium", identifier=identifier)

        if is_exempt_message(message):
            logger.info("Message from %s is exempt from usage counting", identifier)
            return GateDecision(allowed=True, reason="exempt", identifier=identifier)

        limit = self.meter.limit
        usage = await self.meter.get_monthly_usage(identifier)
        if usage.message_count >= limit:
            logger.info("User %s has exceeded monthly limit: %d/%d", identifier, usage.message_count, limit)
            if is_premium_inquiry(message):
                return GateDecision(
                    allowed=True, reason="premium_inquiry", identifier=identifier,
                    current=usage.message_count, limit=limit,
                )
            return GateDecision(
                allowed=False,
                reason="limit_exceeded",
                identifier=identifier,
                current=usage.message_count,
                limit=limit,
                message=limit_exceeded_message(usage.message_count, limit),
                reset_date=next_reset_date(),
            )

        ticket = UsageTicket(self.meter, identifier, {
            "message": message or "",
            "userEmail": email,
            "endpoint": endpoint,
            "method": method,
        })
        return GateDecision(
            allowed=True, reason="metered", identifier=identifier, ticket=ticket,
            current=usage.message_count, limit=limit,
        )
