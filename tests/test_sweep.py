"""Tests for the admin reconciliation sweep."""
from __future__ import annotations

import pytest

from topvoices.models import User
from topvoices.services.sweep import scan_and_repair


def _user(email: str, **update) -> User:
    return User.new(email).model_copy(update=update)


class TestScanAndRepair:
    @pytest.mark.asyncio
    async def test_recovers_subscription_referenced_by_user(self, storage):
        await storage.users.set("a@x.com", _user("a@x.com", subscription_id="s1", subscription_type="premium"))

        report = await scan_and_repair(storage)

        assert report.recovered >= 1
        sub = await storage.subscriptions.get("s1")
        assert sub is not None
        assert sub.email == "a@x.com"
        assert sub.type == "premium"
        assert sub.active is True
        assert sub.source == "manual"
        assert report.missing_by_source == {"manual": 1}
        assert "s1" in await storage.subscriptions.index_for_email("a@x.com")

    @pytest.mark.asyncio
    async def test_recovers_index_orphan_from_owner(self, storage):
        await storage.users.set("b@x.com", _user("b@x.com", subscription_type="manual_premium", active=False))
        await storage.subscriptions.add_index_entry("b@x.com", "gumroad_77")

        report = await scan_and_repair(storage)

        sub = await storage.subscriptions.get("gumroad_77")
        assert sub.type == "manual_premium"
        assert sub.active is False
        assert sub.source == "gumroad"
        assert report.missing_by_source == {"gumroad": 1}

    @pytest.mark.asyncio
    async def test_index_orphan_without_owner_is_left_alone(self, storage):
        await storage.subscriptions.add_index_entry("ghost@x.com", "s9")

        report = await scan_and_repair(storage)

        assert report.recovered == 0
        assert await storage.subscriptions.get("s9") is None

    @pytest.mark.asyncio
    async def test_retags_gumroad_grant(self, storage):
        await storage.subscriptions.set("gumroad_abc", {"email": "c@x.com", "active": True, "type": "premium"})
        await storage.users.set("c@x.com", _user("c@x.com", subscription_id="gumroad_abc"))

        report = await scan_and_repair(storage)

        assert report.retagged == 1
        assert (await storage.subscriptions.get("gumroad_abc")).source == "gumroad_fixed"

    @pytest.mark.asyncio
    async def test_clean_store_reports_totals(self, storage):
        await storage.subscriptions.set("s1", {"email": "a@x.com", "source": "manual"})
        await storage.subscriptions.set("s2", {"email": "b@x.com", "source": "stripe_webhook"})
        await storage.users.set("a@x.com", _user("a@x.com", subscription_id="s1"))

        report = await scan_and_repair(storage)

        assert report.recovered == 0
        assert report.total_subscriptions == 2
        assert report.subscriptions_by_source == {"manual": 1, "stripe_webhook": 1}
        body = report.to_response()
        assert body["missingBySource"] == {}
        assert body["totalSubscriptions"] == 2
