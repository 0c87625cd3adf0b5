"""
Subscription administration — manual grants, Stripe and Gumroad linking,
lifecycle of subscriptions and users, stats, and the lightweight
register/login flow.

Raises ``TopVoicesError`` subclasses; the API layer maps them to HTTP codes.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any

from topvoices.errors import ExternalUnavailableError, InvalidInputError, NotFoundError
from topvoices.models import (
    Subscription,
    SubscriptionSource,
    TierPolicy,
    User,
    mirror_subscription_id,
    new_subscription_id,
    utcnow,
)
from topvoices.services.gumroad_gateway import GumroadGateway
from topvoices.services.stripe_gateway import StripeGateway
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)


def _require_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise InvalidInputError("Email is required")
    return email


class SubscriptionAdmin:
    def __init__(
        self,
        storage: Storage,
        gateway: StripeGateway,
        policy: TierPolicy | None = None,
        gumroad: GumroadGateway | None = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.policy = policy or TierPolicy()
        self.gumroad = gumroad or GumroadGateway()

    # ── Grants ──

    async def _attach_to_user(self, email: str, sub: Subscription) -> User:
        user = await self.storage.users.get(email)
        if user is None:
            user = User.new(email)
            logger.info("Created new user %s with subscription %s", email, sub.id)
        else:
            logger.info("Updated existing user %s with subscription %s", email, sub.id)
        user = user.model_copy(update={
            "subscription_id": sub.id,
            "subscription_type": sub.type,
            "active": True,
            "updated_at": utcnow(),
        })
        return await self.storage.users.set(email, user)

    async def add_manual_subscription(
        self,
        email: str,
        type: str = "premium",
        source: str = SubscriptionSource.MANUAL.value,
        notes: str | None = None,
    ) -> Subscription:
        email = _require_email(email)
        source = source or SubscriptionSource.MANUAL.value
        sub = Subscription(
            id=new_subscription_id(source, email),
            email=email,
            active=True,
            type=type or "premium",
            source=source,
            notes=notes,
        )
        sub = await self.storage.subscriptions.set(sub.id, sub)
        logger.info("Manual subscription %s created for %s", sub.id, email)
        await self._attach_to_user(email, sub)
        return sub

    async def link_stripe_subscription(
        self,
        email: str,
        provider_subscription_id: str,
        customer_id: str | None = None,
        notes: str | None = None,
    ) -> Subscription:
        email = _require_email(email)
        if not provider_subscription_id:
            raise InvalidInputError("Stripe subscription ID is required")

        result = await self.gateway.verify_by_id(provider_subscription_id)
        if not result.success:
            raise ExternalUnavailableError(f"Failed to verify Stripe subscription: {result.message}")
        live = result.subscription or {}
        customer_id = customer_id or live.get("customerId")

        existing = await self.storage.subscriptions.find_by_provider_subscription(provider_subscription_id, email)
        sub = Subscription(
            id=existing.id if existing else mirror_subscription_id(
                self.gateway.provider, email, provider_subscription_id,
            ),
            email=email,
            active=bool(live.get("active")),
            type="premium",
            source=SubscriptionSource.STRIPE_API_LINKED.value,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=customer_id,
            notes=notes,
            provider_data={
                "subscriptionId": provider_subscription_id,
                "customerId": customer_id,
                "status": live.get("status"),
                "currentPeriodEnd": live.get("currentPeriodEnd"),
                "canceledAt": live.get("canceledAt"),
            },
            created_at=existing.created_at if existing else utcnow(),
        )
        sub = await self.storage.subscriptions.set(sub.id, sub)
        logger.info("Stripe subscription %s linked for %s as %s", provider_subscription_id, email, sub.id)
        await self._attach_to_user(email, sub)
        return sub

    async def link_gumroad_subscription(
        self,
        email: str,
        gumroad_subscription_id: str | None = None,
        product_id: str | None = None,
        notes: str | None = None,
    ) -> Subscription:
        """Grant premium backed by Gumroad.

        Links the buyer's active Gumroad subscription when there is one,
        otherwise enrolls them as a subscriber. When Gumroad cannot be
        reached the grant is still recorded as a manual entry.
        """
        email = _require_email(email)
        product_id = product_id or self.gumroad.product_id or None

        live: dict[str, Any] | None = None
        created: dict[str, Any] | None = None
        found = await self.gumroad.find_by_email(email)
        if not found.success:
            logger.warning("Gumroad lookup failed for %s: %s. Recording a manual entry.", email, found.message)
        elif found.subscription:
            live = found.subscription
        else:
            result = await self.gumroad.create_subscriber(email, product_id)
            if result.success:
                created = result.subscription or {}
            else:
                logger.warning("Could not create Gumroad subscriber %s: %s", email, result.message)

        if live is not None:
            sub_id = live["id"]
            source = SubscriptionSource.GUMROAD_API_LINKED.value
            provider_subscription_id = live.get("subscriptionId") or gumroad_subscription_id
            provider_data = {k: v for k, v in live.items() if k not in ("id", "email", "active")}
        elif created is not None:
            subscriber_id = created.get("id")
            sub_id = f"gumroad_direct_{subscriber_id}" if subscriber_id else new_subscription_id("gumroad", email)
            source = SubscriptionSource.GUMROAD_API_CREATED.value
            provider_subscription_id = subscriber_id or gumroad_subscription_id
            provider_data = {"subscriberId": subscriber_id, "productId": product_id, "status": created.get("status")}
        else:
            sub_id = new_subscription_id("gumroad", email)
            source = SubscriptionSource.GUMROAD_MANUAL_ENTRY.value
            provider_subscription_id = gumroad_subscription_id
            provider_data = {"subscriptionId": gumroad_subscription_id, "productId": product_id}

        existing = await self.storage.subscriptions.get(sub_id)
        sub = Subscription(
            id=sub_id,
            email=email,
            active=True,
            type="premium",
            source=source,
            provider_subscription_id=provider_subscription_id,
            provider_data=provider_data,
            notes=notes,
            created_at=existing.created_at if existing else utcnow(),
        )
        sub = await self.storage.subscriptions.set(sub.id, sub)
        logger.info("Gumroad subscription %s recorded for %s (%s)", sub.id, email, source)
        await self._attach_to_user(email, sub)
        return sub

    # ── Subscription lifecycle ──

    async def _get_subscription(self, subscription_id: str) -> Subscription:
        if not subscription_id:
            raise InvalidInputError("Subscription ID is required")
        sub = await self.storage.subscriptions.get(subscription_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    async def _cancel_upstream(self, sub: Subscription) -> None:
        """Best effort; local changes proceed whatever the provider says."""
        provider_id = sub.provider_subscription_id or (sub.provider_data or {}).get("subscriptionId")
        if not provider_id:
            return
        if sub.provider != self.gateway.provider:
            logger.info("No cancellation available for %s subscription %s", sub.provider, provider_id)
            return
        result = await self.gateway.cancel(provider_id)
        if result.success:
            logger.info("Cancelled Stripe subscription %s", provider_id)
        else:
            logger.warning(
                "Failed to cancel Stripe subscription %s: %s. Proceeding locally.",
                provider_id, result.message,
            )

    async def list_subscriptions(self) -> list[Subscription]:
        subs = await self.storage.subscriptions.get_all()
        return sorted(subs.values(), key=lambda s: s.created_at, reverse=True)

    async def activate_subscription(self, subscription_id: str) -> Subscription:
        sub = await self._get_subscription(subscription_id)
        now = utcnow()
        sub = await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
            "active": True, "updated_at": now,
        }))
        if sub.email:
            user = await self.storage.users.get(sub.email)
            if user is not None:
                await self.storage.users.set(sub.email, user.model_copy(update={
                    "active": True, "subscription_type": sub.type, "updated_at": now,
                }))
        return sub

    async def deactivate_subscription(self, subscription_id: str) -> Subscription:
        sub = await self._get_subscription(subscription_id)
        await self._cancel_upstream(sub)
        return await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
            "active": False, "status": "deactivated", "updated_at": utcnow(),
        }))

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Returns False when there was nothing to delete."""
        if not subscription_id:
            raise InvalidInputError("Subscription ID is required")
        sub = await self.storage.subscriptions.get(subscription_id)
        if sub is None:
            return False

        await self._cancel_upstream(sub)
        await self.storage.subscriptions.delete(subscription_id)

        if sub.email:
            user = await self.storage.users.get(sub.email)
            if user is not None and user.subscription_id == subscription_id:
                await self.storage.users.set(sub.email, user.model_copy(update={
                    "subscription_id": None,
                    "subscription_type": "free",
                    "subscription": None,
                    "updated_at": utcnow(),
                }))
                logger.info("Cleaned up user %s after deleting subscription %s", sub.email, subscription_id)
        return True

    # ── User lifecycle ──

    async def _get_user(self, email: str) -> User:
        email = _require_email(email)
        user = await self.storage.users.get(email)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def list_users(self) -> list[User]:
        users = await self.storage.users.get_all()
        return sorted(users.values(), key=lambda u: u.created_at, reverse=True)

    async def get_user(self, email: str) -> User:
        return await self._get_user(email)

    async def update_user(
        self,
        email: str,
        name: str | None = None,
        active: bool | None = None,
        subscription_type: str | None = None,
    ) -> User:
        """Edit a user; a tier change is carried over to their subscription."""
        user = await self._get_user(email)
        now = utcnow()
        previous_type = user.subscription_type
        changes: dict[str, Any] = {"updated_at": now}
        if name is not None:
            changes["name"] = name
        if active is not None:
            changes["active"] = active
        if subscription_type is not None:
            changes["subscription_type"] = subscription_type
        user = user.model_copy(update=changes)

        if subscription_type is not None and subscription_type != previous_type:
            sub = await self.storage.subscriptions.get(user.subscription_id)
            if self.policy.is_premium(subscription_type):
                if sub is None:
                    sub = Subscription(
                        id=user.subscription_id or new_subscription_id("premium", user.email),
                        email=user.email,
                        source=SubscriptionSource.ADMIN_ADDED.value,
                        created_at=now,
                    )
                sub = await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
                    "active": True, "type": subscription_type, "updated_at": now,
                }))
                user = user.model_copy(update={"subscription_id": sub.id})
                logger.info("Upgraded %s to %s via subscription %s", user.email, subscription_type, sub.id)
            elif subscription_type in self.policy.free and sub is not None:
                await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
                    "active": False, "updated_at": now,
                }))
                logger.info("Downgraded %s to free, deactivated subscription %s", user.email, sub.id)

        return await self.storage.users.set(user.email, user)

    async def _set_user_active(self, email: str, active: bool) -> User:
        user = await self._get_user(email)
        now = utcnow()
        user = await self.storage.users.set(user.email, user.model_copy(update={
            "active": active, "updated_at": now,
        }))
        sub = await self.storage.subscriptions.get(user.subscription_id)
        if sub is not None:
            await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
                "active": active, "updated_at": now,
            }))
        return user

    async def activate_user(self, email: str) -> User:
        return await self._set_user_active(email, True)

    async def deactivate_user(self, email: str) -> User:
        return await self._set_user_active(email, False)

    async def delete_user(self, email: str) -> None:
        user = await self._get_user(email)
        await self.storage.users.delete(user.email)
        if user.subscription_id:
            await self.storage.subscriptions.delete(user.subscription_id)
        logger.info("Deleted user %s and subscription %s", user.email, user.subscription_id)

    # ── Reporting ──

    async def stats(self) -> dict[str, Any]:
        users = list((await self.storage.users.get_all()).values())
        subs = list((await self.storage.subscriptions.get_all()).values())

        total = len(users)
        premium = sum(1 for u in users if self.policy.is_premium(u.subscription_type))
        cutoff = utcnow() - timedelta(days=7)
        return {
            "totalUsers": total,
            "activeUsers": sum(1 for u in users if u.active),
            "freeUsers": sum(1 for u in users if u.subscription_type in self.policy.free),
            "premiumUsers": premium,
            "activeSubscriptions": sum(1 for s in subs if s.active),
            "newUsers7d": sum(1 for u in users if u.created_at >= cutoff),
            "conversionRate": round(premium / total * 100) if total else 0,
            "subscriptionsBySource": dict(Counter(s.source or "unknown" for s in subs)),
        }

    async def list_provider_subscriptions(self) -> list[dict[str, Any]]:
        result = await self.gateway.list_all()
        if not result.success:
            raise ExternalUnavailableError(f"Failed to list Stripe subscriptions: {result.message}")
        return result.data

    # ── Register / login ──

    async def register(self, email: str, name: str | None = None) -> tuple[User, Subscription]:
        email = _require_email(email)
        if await self.storage.users.get(email) is not None:
            raise InvalidInputError("User already exists")

        sub = Subscription(
            id=new_subscription_id("free"),
            email=email,
            active=True,
            type="free",
            source=SubscriptionSource.FREE_SIGNUP.value,
        )
        user = User.new(email, name).model_copy(update={
            "subscription_id": sub.id,
            "subscription_type": "free",
        })
        await self.storage.users.set(email, user)
        await self.storage.subscriptions.set(sub.id, sub)
        logger.info("Registered %s with free subscription %s", email, sub.id)
        return user, sub

    async def login(self, email: str) -> tuple[User, bool]:
        """Returns (user, created); unknown emails are registered on the spot."""
        email = _require_email(email)
        user = await self.storage.users.get(email)
        if user is not None:
            return user, False
        user, _ = await self.register(email)
        return user, True
