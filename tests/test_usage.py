"""Tests for usage metering and the free-tier gate."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from topvoices.models import User
from topvoices.services.usage import (
    current_month,
    is_exempt_message,
    is_premium_inquiry,
    limit_exceeded_message,
    next_reset_date,
)


async def _use(meter, identifier: str, n: int) -> None:
    for _ in range(n):
        await meter.increment_usage(identifier, {"message": "question"})


# ── Classifiers ───────────────────────────────────────────────────────────────

class TestClassifiers:
    @pytest.mark.parametrize("message", [
        "What's your pricing?",
        "How do I UPGRADE",
        "hello there",
        "what can you do",
        "I got an error",
        "whatsthepricing",
        "repricing?",
    ])
    def test_exempt(self, message):
        assert is_exempt_message(message)

    @pytest.mark.parametrize("message", [
        "Who are the top voices in fintech?",
        "Tell me about this person",  # "hi" inside "this"
        "Summarize their posts from last week",
        "",
        None,
    ])
    def test_not_exempt(self, message):
        assert not is_exempt_message(message)

    def test_premium_inquiry(self):
        assert is_premium_inquiry("is there an unlimited option?")
        assert is_premium_inquiry("Do you have a PRO version")
        assert not is_premium_inquiry("top voices in marketing")
        assert not is_premium_inquiry(42)

    def test_billing_words_match_inside_other_words(self):
        assert is_premium_inquiry("anyupgrades for me")
        assert is_premium_inquiry("PREMIUMACCESS please")
        # Short keywords still need a word of their own
        assert not is_premium_inquiry("list products by voice")
        assert not is_exempt_message("which voice is this")


class TestDates:
    def test_month_key(self):
        assert current_month(datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2026-03"

    def test_reset_date_rolls_year(self):
        assert next_reset_date(datetime(2026, 12, 15, tzinfo=timezone.utc)) == "2027-01-01"
        assert next_reset_date(datetime(2026, 4, 2, tzinfo=timezone.utc)) == "2026-05-01"

    def test_limit_message_mentions_counts_and_upgrade(self):
        text = limit_exceeded_message(5, 5)
        assert "5/5" in text
        assert "upgrade" in text.lower()


# ── Meter ─────────────────────────────────────────────────────────────────────

class TestMeter:
    @pytest.mark.asyncio
    async def test_unknown_identifier_reads_zero(self, meter):
        usage = await meter.get_monthly_usage("nobody")
        assert usage.message_count == 0
        assert usage.details == []
        assert usage.month == current_month()

    @pytest.mark.asyncio
    async def test_increment_truncates_excerpt(self, meter):
        record = await meter.increment_usage("t1", {
            "message": "x" * 300, "endpoint": "/api/v1/chat", "method": "POST", "userEmail": "a@x.com",
        })
        assert record.message_count == 1
        detail = record.details[0]
        assert len(detail.message) == 100
        assert detail.endpoint == "/api/v1/chat"
        assert detail.user_email == "a@x.com"

    @pytest.mark.asyncio
    async def test_has_exceeded_limit(self, meter):
        await _use(meter, "t1", 2)
        assert not await meter.has_exceeded_limit("t1", limit=3)
        await _use(meter, "t1", 1)
        assert await meter.has_exceeded_limit("t1", limit=3)

    @pytest.mark.asyncio
    async def test_reset(self, meter):
        await _use(meter, "t1", 3)
        await meter.reset_usage("t1")
        assert (await meter.get_monthly_usage("t1")).message_count == 0


# ── Gate ──────────────────────────────────────────────────────────────────────

class TestGate:
    @pytest.mark.asyncio
    async def test_under_limit_allowed_then_counted(self, gate, meter):
        await _use(meter, "t1", 4)

        decision = await gate.check("t1", "Who leads in AI?")
        assert decision.allowed
        assert decision.ticket is not None
        # Nothing counted until the ticket is committed
        assert (await meter.get_monthly_usage("t1")).message_count == 4

        await decision.ticket.commit()
        assert (await meter.get_monthly_usage("t1")).message_count == 5

    @pytest.mark.asyncio
    async def test_at_limit_rejected_without_increment(self, gate, meter):
        await _use(meter, "t1", 5)

        decision = await gate.check("t1", "Who leads in AI?")

        assert not decision.allowed
        assert decision.ticket is None
        body = decision.limit_response()
        assert body["error"] == "Monthly limit exceeded"
        assert body["usage"]["current"] == 5
        assert body["usage"]["limit"] == 5
        assert body["usage"]["resetDate"] == next_reset_date()
        assert (await meter.get_monthly_usage("t1")).message_count == 5

    @pytest.mark.asyncio
    async def test_exempt_message_passes_at_limit_without_ticket(self, gate, meter):
        await _use(meter, "t1", 5)

        decision = await gate.check("t1", "what is your pricing")

        assert decision.allowed
        assert decision.reason == "exempt"
        assert decision.ticket is None
        assert (await meter.get_monthly_usage("t1")).message_count == 5

    @pytest.mark.asyncio
    async def test_premium_inquiry_passes_when_over_limit(self, gate, meter):
        await _use(meter, "t1", 5)

        decision = await gate.check("t1", "is there an unlimited version")

        assert decision.allowed
        assert decision.reason == "premium_inquiry"
        assert decision.ticket is None

    @pytest.mark.asyncio
    async def test_premium_user_not_metered(self, gate, meter, storage):
        await storage.users.set("vip@x.com", User.new("vip@x.com").model_copy(update={
            "subscription_type": "premium",
        }))
        await _use(meter, "t1", 10)

        decision = await gate.check("t1", "Who leads in AI?", email="vip@x.com")

        assert decision.allowed
        assert decision.reason == "premium"
        assert decision.ticket is None

    @pytest.mark.asyncio
    async def test_no_identifier_allowed_unmetered(self, gate):
        decision = await gate.check(None, "anything")
        assert decision.allowed
        assert decision.ticket is None

    @pytest.mark.asyncio
    async def test_ticket_commits_once(self, gate, meter):
        decision = await gate.check("t1", "Who leads in AI?")

        first = await decision.ticket.commit()
        second = await decision.ticket.commit()

        assert first.message_count == 1
        assert second is None
        assert decision.ticket.committed
        assert (await meter.get_monthly_usage("t1")).message_count == 1
