"""Tests for subscription administration."""
from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from conftest import live_subscription, make_gumroad
from topvoices.errors import ExternalUnavailableError, InvalidInputError, NotFoundError
from topvoices.models import User, mirror_subscription_id, utcnow
from topvoices.services.admin import SubscriptionAdmin
from topvoices.services.stripe_gateway import GatewayResult


class TestGrants:
    @pytest.mark.asyncio
    async def test_manual_grant_creates_user(self, admin, storage):
        sub = await admin.add_manual_subscription("Grant@X.com", notes="partner")

        assert sub.id.startswith("manual_")
        assert sub.active and sub.type == "premium"
        assert sub.notes == "partner"
        user = await storage.users.get("grant@x.com")
        assert user.subscription_id == sub.id
        assert user.subscription_type == "premium"
        assert sub.id in await storage.subscriptions.index_for_email("grant@x.com")

    @pytest.mark.asyncio
    async def test_manual_grant_requires_email(self, admin):
        with pytest.raises(InvalidInputError):
            await admin.add_manual_subscription("  ")

    @pytest.mark.asyncio
    async def test_link_stripe_verifies_first(self, admin, gateway, storage):
        gateway.verify_by_id.return_value = GatewayResult(
            success=True, subscription=live_subscription("sub_9", customer="cus_9"),
        )

        sub = await admin.link_stripe_subscription("a@x.com", "sub_9")

        assert sub.source == "stripe_api_linked"
        assert sub.active is True
        assert sub.provider_customer_id == "cus_9"
        assert sub.provider_data["status"] == "active"
        assert (await storage.users.get("a@x.com")).subscription_id == sub.id

    @pytest.mark.asyncio
    async def test_link_stripe_twice_reuses_record(self, admin, gateway, storage):
        gateway.verify_by_id.return_value = GatewayResult(success=True, subscription=live_subscription("sub_9"))

        first = await admin.link_stripe_subscription("a@x.com", "sub_9")
        second = await admin.link_stripe_subscription("a@x.com", "sub_9", notes="again")

        assert first.id == second.id == mirror_subscription_id("stripe", "a@x.com", "sub_9")
        assert len(await storage.subscriptions.get_for_email("a@x.com")) == 1

    @pytest.mark.asyncio
    async def test_link_stripe_failure_raises(self, admin, storage):
        with pytest.raises(ExternalUnavailableError):
            await admin.link_stripe_subscription("a@x.com", "sub_bad")
        assert await storage.subscriptions.get_for_email("a@x.com") == {}


class TestGumroadLink:
    @staticmethod
    def _admin(storage, gateway, policy, sales, subscriber=None):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"success": True, "subscriber": subscriber or {}})
            return httpx.Response(200, json={"success": True, "sales": sales})
        return SubscriptionAdmin(storage, gateway, policy, make_gumroad(handler))

    @pytest.mark.asyncio
    async def test_links_existing_gumroad_subscription(self, storage, gateway, policy):
        admin = self._admin(storage, gateway, policy, sales=[{
            "id": "p1", "email": "a@x.com", "subscription_id": "gsub_1", "product_id": "prod_1",
            "subscription_ended_at": None,
        }])

        sub = await admin.link_gumroad_subscription("A@x.com", notes="bought on gumroad")

        assert sub.id == "gumroad_direct_gsub_1"
        assert sub.source == "gumroad_api_linked"
        assert sub.provider_subscription_id == "gsub_1"
        assert sub.provider_data["purchaseId"] == "p1"
        assert sub.active and sub.type == "premium"
        user = await storage.users.get("a@x.com")
        assert user.subscription_id == sub.id
        assert user.subscription_type == "premium"

    @pytest.mark.asyncio
    async def test_enrolls_buyer_without_subscription(self, storage, gateway, policy):
        admin = self._admin(storage, gateway, policy, sales=[], subscriber={"id": "sbr_7", "status": "alive"})

        sub = await admin.link_gumroad_subscription("a@x.com")

        assert sub.id == "gumroad_direct_sbr_7"
        assert sub.source == "gumroad_api_created"
        assert sub.provider_data["productId"] == "prod_1"

    @pytest.mark.asyncio
    async def test_unreachable_gumroad_records_manual_entry(self, admin, storage, engine, gateway):
        sub = await admin.link_gumroad_subscription("a@x.com", gumroad_subscription_id="gsub_9")

        assert sub.id.startswith("gumroad_")
        assert sub.source == "gumroad_manual_entry"
        assert sub.provider_subscription_id == "gsub_9"
        res = await engine.resolve_entitlement(email="a@x.com")
        assert res.confirmed
        gateway.list_by_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_relinking_keeps_one_record(self, storage, gateway, policy):
        sales = [{"id": "p1", "email": "a@x.com", "subscription_id": "gsub_1", "subscription_ended_at": None}]
        admin = self._admin(storage, gateway, policy, sales=sales)

        first = await admin.link_gumroad_subscription("a@x.com")
        second = await admin.link_gumroad_subscription("a@x.com", notes="again")

        assert first.id == second.id
        assert first.created_at == second.created_at
        assert len(await storage.subscriptions.get_for_email("a@x.com")) == 1


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_deactivate_cancels_stripe(self, admin, gateway, storage):
        await storage.subscriptions.set("m1", {
            "email": "a@x.com", "active": True, "type": "premium",
            "source": "stripe_webhook", "providerSubscriptionId": "sub_1",
        })

        sub = await admin.deactivate_subscription("m1")

        gateway.cancel.assert_awaited_once_with("sub_1")
        assert sub.active is False
        assert sub.status == "deactivated"

    @pytest.mark.asyncio
    async def test_deactivate_proceeds_when_cancel_fails(self, admin, gateway, storage):
        gateway.cancel.return_value = GatewayResult.failure("No such subscription")
        await storage.subscriptions.set("m1", {
            "email": "a@x.com", "active": True, "source": "stripe", "stripeData": {"subscriptionId": "sub_1"},
        })

        sub = await admin.deactivate_subscription("m1")

        gateway.cancel.assert_awaited_once_with("sub_1")
        assert (await storage.subscriptions.get("m1")).active is False
        assert sub.status == "deactivated"

    @pytest.mark.asyncio
    async def test_manual_grant_not_cancelled_upstream(self, admin, gateway):
        sub = await admin.add_manual_subscription("a@x.com")
        await admin.deactivate_subscription(sub.id)
        gateway.cancel.assert_not_called()

    @pytest.mark.asyncio
    async def test_activate_syncs_user_tier(self, admin, storage):
        sub = await admin.add_manual_subscription("a@x.com", type="manual_premium")
        await admin.deactivate_user("a@x.com")

        await admin.activate_subscription(sub.id)

        user = await storage.users.get("a@x.com")
        assert user.active is True
        assert user.subscription_type == "manual_premium"
        assert (await storage.subscriptions.get(sub.id)).active is True

    @pytest.mark.asyncio
    async def test_unknown_subscription_not_found(self, admin):
        with pytest.raises(NotFoundError):
            await admin.activate_subscription("nope")

    @pytest.mark.asyncio
    async def test_delete_clears_user_pointer(self, admin, storage):
        sub = await admin.add_manual_subscription("a@x.com")

        assert await admin.delete_subscription(sub.id) is True

        assert await storage.subscriptions.get(sub.id) is None
        user = await storage.users.get("a@x.com")
        assert user.subscription_id is None
        assert user.subscription_type == "free"

    @pytest.mark.asyncio
    async def test_delete_unknown_is_noop(self, admin):
        assert await admin.delete_subscription("nope") is False


class TestUserLifecycle:
    @pytest.mark.asyncio
    async def test_deactivate_user_propagates(self, admin, storage):
        sub = await admin.add_manual_subscription("a@x.com")

        user = await admin.deactivate_user("a@x.com")

        assert user.active is False
        assert (await storage.subscriptions.get(sub.id)).active is False

    @pytest.mark.asyncio
    async def test_delete_user_cascades(self, admin, storage):
        sub = await admin.add_manual_subscription("a@x.com")

        await admin.delete_user("a@x.com")

        assert await storage.users.get("a@x.com") is None
        assert await storage.subscriptions.get(sub.id) is None
        assert await storage.subscriptions.index_for_email("a@x.com") == set()

    @pytest.mark.asyncio
    async def test_unknown_user(self, admin):
        with pytest.raises(NotFoundError):
            await admin.delete_user("ghost@x.com")
        with pytest.raises(NotFoundError):
            await admin.update_user("ghost@x.com", name="Ghost")

    @pytest.mark.asyncio
    async def test_update_plain_fields(self, admin, storage):
        _, sub = await admin.register("a@x.com")

        updated = await admin.update_user("A@x.com", name="Ada", active=False)

        assert updated.name == "Ada"
        assert updated.active is False
        assert updated.subscription_type == "free"
        assert (await storage.users.get("a@x.com")).name == "Ada"
        assert (await storage.subscriptions.get(sub.id)).type == "free"

    @pytest.mark.asyncio
    async def test_upgrade_carries_over_to_subscription(self, admin, storage):
        _, sub = await admin.register("a@x.com")

        updated = await admin.update_user("a@x.com", subscription_type="premium")

        assert updated.subscription_type == "premium"
        assert updated.subscription_id == sub.id
        stored = await storage.subscriptions.get(sub.id)
        assert stored.active is True
        assert stored.type == "premium"

    @pytest.mark.asyncio
    async def test_upgrade_without_subscription_creates_one(self, admin, storage):
        await storage.users.set("a@x.com", User.new("a@x.com"))

        updated = await admin.update_user("a@x.com", subscription_type="premium")

        assert updated.subscription_id.startswith("premium_")
        stored = await storage.subscriptions.get(updated.subscription_id)
        assert stored.source == "admin_added"
        assert stored.active and stored.type == "premium"

    @pytest.mark.asyncio
    async def test_downgrade_deactivates_subscription(self, admin, storage):
        sub = await admin.add_manual_subscription("a@x.com")

        updated = await admin.update_user("a@x.com", subscription_type="free")

        assert updated.subscription_type == "free"
        assert (await storage.subscriptions.get(sub.id)).active is False


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, admin, storage):
        await admin.register("free@x.com")
        await admin.add_manual_subscription("paid@x.com")
        old = User.new("old@x.com").model_copy(update={"created_at": utcnow() - timedelta(days=30)})
        await storage.users.set(old.email, old)

        stats = await admin.stats()

        assert stats["totalUsers"] == 3
        assert stats["premiumUsers"] == 1
        assert stats["freeUsers"] == 2
        assert stats["newUsers7d"] == 2
        assert stats["conversionRate"] == 33
        assert stats["activeSubscriptions"] == 2
        assert stats["subscriptionsBySource"] == {"free_signup": 1, "manual": 1}

    @pytest.mark.asyncio
    async def test_provider_listing_failure(self, admin, gateway):
        gateway.list_all.return_value = GatewayResult.failure("Stripe configuration is missing")
        with pytest.raises(ExternalUnavailableError):
            await admin.list_provider_subscriptions()


class TestRegisterLogin:
    @pytest.mark.asyncio
    async def test_register_creates_free_subscription(self, admin, storage):
        user, sub = await admin.register("new@x.com", "New Person")

        assert user.name == "New Person"
        assert user.subscription_type == "free"
        assert sub.type == "free" and sub.active
        assert sub.source == "free_signup"
        assert (await storage.subscriptions.get(sub.id)).email == "new@x.com"

    @pytest.mark.asyncio
    async def test_register_twice_rejected(self, admin):
        await admin.register("new@x.com")
        with pytest.raises(InvalidInputError):
            await admin.register("NEW@x.com")

    @pytest.mark.asyncio
    async def test_login_auto_registers(self, admin):
        user, created = await admin.login("walkin@x.com")
        assert created is True
        again, created_again = await admin.login("walkin@x.com")
        assert created_again is False
        assert again.subscription_id == user.subscription_id
