"""Tests for JSON snapshot export/import."""
from __future__ import annotations

import json

import pytest

from topvoices.storage.container import Storage
from topvoices.storage.snapshot import export_snapshot, import_snapshot

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_export_layout(self, storage, admin, tmp_path):
        sub = await admin.add_manual_subscription("a@x.com")

        counts = await export_snapshot(storage, tmp_path)

        assert counts.users == 1
        assert counts.subscriptions == 1
        subs = json.loads((tmp_path / "subscriptions.json").read_text())
        assert subs[sub.id]["email"] == "a@x.com"
        assert subs["email:a@x.com"] == {sub.id: True}
        users = json.loads((tmp_path / "users.json").read_text())
        assert users["a@x.com"]["subscriptionId"] == sub.id

    @pytest.mark.asyncio
    async def test_export_then_import_into_fresh_store(self, storage, admin, tmp_path):
        sub = await admin.add_manual_subscription("a@x.com", notes="vip")
        await admin.register("free@x.com")
        await export_snapshot(storage, tmp_path)

        fresh = await Storage(TEST_DB_URL).init()
        try:
            counts = await import_snapshot(fresh, tmp_path)

            assert counts.users == 2
            assert counts.skipped == 0
            restored = await fresh.subscriptions.get(sub.id)
            assert restored.notes == "vip"
            assert restored.active is True
            assert sub.id in await fresh.subscriptions.index_for_email("a@x.com")
            assert (await fresh.users.get("a@x.com")).subscription_type == "premium"
        finally:
            await fresh.close()

    @pytest.mark.asyncio
    async def test_import_legacy_file(self, storage, tmp_path):
        (tmp_path / "subscriptions.json").write_text(json.dumps({
            "stripe_old": {
                "email": "Old@X.com", "active": True, "type": "premium", "source": "stripe_webhook",
                "stripeSubscriptionId": "sub_1", "stripeData": {"status": "active"},
            },
            "bad": {"active": "not-a-bool"},
            "email:old@x.com": {"stripe_old": True, "gumroad_lost": True, "dropped": False},
        }))
        (tmp_path / "users.json").write_text(json.dumps({
            "old@x.com": {"subscriptionId": "stripe_old", "subscriptionType": "premium", "legacyField": 1},
        }))

        counts = await import_snapshot(storage, tmp_path)

        assert counts.subscriptions == 1
        assert counts.skipped == 1
        assert counts.index_entries == 2
        sub = await storage.subscriptions.get("stripe_old")
        assert sub.email == "old@x.com"
        assert sub.provider_subscription_id == "sub_1"
        assert sub.provider_data == {"status": "active"}
        assert await storage.subscriptions.index_for_email("old@x.com") == {"stripe_old", "gumroad_lost"}
        user = await storage.users.get("old@x.com")
        assert user.model_extra["legacyField"] == 1

    @pytest.mark.asyncio
    async def test_import_missing_files_is_noop(self, storage, tmp_path):
        counts = await import_snapshot(storage, tmp_path)
        assert counts.users == 0
        assert counts.subscriptions == 0
