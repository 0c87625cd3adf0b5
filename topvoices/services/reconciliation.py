"""
Entitlement Reconciliation Engine
---
Decides whether a user currently holds premium by walking three sources of
truth in a fixed order, stopping at the first confirmation:

1. active local records whose tier is locally authoritative, whatever their
   source (manual, admin and provider mirrors alike);
2. remaining local mirrors of Stripe subscriptions, re-verified live;
3. a direct Stripe lookup by email, mirrored locally on success.

Confirmed state is written back to the Entitlement and User stores before the
decision is returned. A failed Stripe call never aborts the walk; it only
means that step could not confirm.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from topvoices.errors import ErrorKind
from topvoices.models import (
    EntitlementDecision,
    Subscription,
    SubscriptionSource,
    TierPolicy,
    User,
    VerificationSnapshot,
    features_for,
    mirror_subscription_id,
    utcnow,
)
from topvoices.services.stripe_gateway import GatewayResult, StripeGateway
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

PREMIUM = "premium"
FREE = "free"


@dataclass
class Resolution:
    """Outcome of one reconciliation pass.

    ``decision`` is None only for NOT_FOUND / INVALID_INPUT. A negative
    decision with ``error == EXTERNAL_UNAVAILABLE`` means "could not verify".
    """
    decision: Optional[EntitlementDecision] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    evidence_id: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.decision is not None and self.decision.has_valid_subscription


@dataclass
class _Pass:
    """Bookkeeping for a single walk down the precedence chain."""
    provider_unavailable: bool = False
    revoked: list[tuple[Subscription, dict[str, Any]]] = field(default_factory=list)


class ReconciliationEngine:
    def __init__(
        self,
        storage: Storage,
        gateway: StripeGateway,
        policy: TierPolicy | None = None,
        call_timeout: float | None = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.policy = policy or TierPolicy()
        # Upper bound on any single gateway call, on top of the HTTP timeout
        self.call_timeout = call_timeout if call_timeout is not None else gateway.timeout + 5

    async def resolve_entitlement(
        self, email: str | None = None, subscription_id: str | None = None,
    ) -> Resolution:
        if not email and not subscription_id:
            return Resolution(error=ErrorKind.INVALID_INPUT, message="Email or subscription ID is required")

        queried: Subscription | None = None
        if subscription_id:
            queried = await self.storage.subscriptions.get(subscription_id)
            if queried is None:
                return Resolution(error=ErrorKind.NOT_FOUND, message="Subscription not found")
            email = queried.email
        email = (email or "").strip().lower() or None

        candidates: dict[str, Subscription] = {}
        if email:
            candidates = await self.storage.subscriptions.get_for_email(email)
        if queried is not None:
            candidates.setdefault(queried.id, queried)
        ordered = sorted(candidates.values(), key=lambda s: (s.created_at, s.id))
        walk = _Pass()

        # Local grants win outright
        for sub in ordered:
            if sub.active and self._is_locally_authoritative(sub):
                logger.info("Using locally verified subscription for %s (ID: %s)", email or sub.id, sub.id)
                return await self._confirm(email, sub, queried, evidence=sub.to_record())

        # Known Stripe mirrors, re-verified live
        for sub in ordered:
            if sub.provider != self.gateway.provider or not sub.provider_subscription_id:
                continue
            result = await self._call("verify_by_id", self.gateway.verify_by_id, sub.provider_subscription_id)
            if not result.success:
                walk.provider_unavailable = True
                continue
            live = result.subscription or {}
            if live.get("active"):
                logger.info("Stripe confirmed subscription %s for %s", sub.id, email)
                sub = sub.model_copy(update={"provider_data": {**(sub.provider_data or {}), **live}})
                return await self._confirm(email, sub, queried, evidence=live)
            walk.revoked.append((sub, live))

        # Fresh lookup by email
        if email:
            logger.info("No locally confirmed subscription for %s, fetching directly from Stripe", email)
            result = await self._call("list_by_email", self.gateway.list_by_email, email)
            if not result.success:
                walk.provider_unavailable = True
            else:
                live = next((s for s in result.subscriptions if s.get("active")), None)
                if live is not None:
                    mirror = await self._mirror(email, live)
                    return await self._confirm(
                        email, mirror, queried, evidence=mirror.provider_data or live,
                        customer=result.customer,
                    )

        await self._record_negative(email, walk)
        decision = EntitlementDecision(
            active=False,
            type=FREE,
            features=features_for(FREE, self.policy),
            has_valid_subscription=False,
            email=email,
            subscription_id=queried.id if queried else None,
        )
        if walk.provider_unavailable:
            return Resolution(
                decision=decision,
                error=ErrorKind.EXTERNAL_UNAVAILABLE,
                message="Could not verify subscription right now",
            )
        return Resolution(decision=decision, message="No valid subscription found")

    # ── steps ──

    def _is_locally_authoritative(self, sub: Subscription) -> bool:
        if sub.provider == self.gateway.provider and not self.policy.trust_provider_mirrors:
            return False
        return self.policy.is_local_authoritative(sub.type)

    async def _call(self, label: str, fn, *args) -> GatewayResult:
        try:
            return await asyncio.wait_for(fn(*args), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s%r timed out after %ss", label, args, self.call_timeout)
            return GatewayResult.failure("Provider call timed out")
        except Exception:
            logger.exception("%s%r raised", label, args)
            return GatewayResult.failure("Provider call failed")

    async def _mirror(self, email: str, live: dict[str, Any]) -> Subscription:
        """Store a Stripe subscription found by email, at most once per (email, id)."""
        now = utcnow()
        provider_data = {
            "subscriptionId": live.get("id"),
            "customerId": live.get("customerId"),
            "status": live.get("status"),
            "currentPeriodEnd": live.get("currentPeriodEnd"),
        }
        for key in ("trialStart", "trialEnd"):
            if live.get(key):
                provider_data[key] = live[key]

        # Re-check right before writing; a concurrent pass may have mirrored it
        existing = await self.storage.subscriptions.find_by_provider_subscription(live["id"], email)
        if existing is not None:
            logger.info("Reusing local mirror %s for Stripe subscription %s", existing.id, live["id"])
            return existing.model_copy(update={
                "provider_data": {**(existing.provider_data or {}), **provider_data},
                "provider_customer_id": existing.provider_customer_id or live.get("customerId"),
            })

        mirror = Subscription(
            id=mirror_subscription_id(self.gateway.provider, email, live["id"]),
            email=email,
            active=True,
            type=PREMIUM,
            source=SubscriptionSource.STRIPE_DIRECT_FETCH.value,
            provider_subscription_id=live["id"],
            provider_customer_id=live.get("customerId"),
            provider_data=provider_data,
            created_at=now,
            updated_at=now,
        )
        logger.info("Mirroring Stripe subscription %s for %s as %s", live["id"], email, mirror.id)
        return mirror

    async def _confirm(
        self,
        email: str | None,
        evidence_sub: Subscription,
        queried: Subscription | None,
        evidence: dict[str, Any],
        customer: dict[str, Any] | None = None,
    ) -> Resolution:
        """Write a confirmation through to both stores and build the decision."""
        now = utcnow()
        tier = evidence_sub.type if self.policy.is_premium(evidence_sub.type) else PREMIUM
        evidence_sub = evidence_sub.model_copy(update={"active": True, "type": tier, "updated_at": now})
        await self.storage.subscriptions.set(evidence_sub.id, evidence_sub)

        if queried is not None and queried.id != evidence_sub.id:
            if not (queried.active and self.policy.is_premium(queried.type)):
                upgraded = queried.model_copy(update={
                    "active": True,
                    "type": PREMIUM,
                    "updated_at": now,
                })
                await self.storage.subscriptions.set(upgraded.id, upgraded)

        if email:
            user = await self.storage.users.get(email)
            if user is None:
                user = User.new(email, name=(customer or {}).get("name"))
            user = user.model_copy(update={
                "subscription_id": evidence_sub.id,
                "subscription_type": tier,
                "subscription": VerificationSnapshot(
                    verified=True, verified_at=now, source=evidence_sub.source, evidence=evidence,
                ),
                "updated_at": now,
            })
            await self.storage.users.set(email, user)

        decision = EntitlementDecision(
            active=True,
            type=PREMIUM,
            features=features_for(PREMIUM, self.policy),
            has_valid_subscription=True,
            email=email,
            subscription_id=queried.id if queried is not None else evidence_sub.id,
            source=evidence_sub.source,
        )
        return Resolution(decision=decision, evidence_id=evidence_sub.id)

    async def _record_negative(self, email: str | None, walk: _Pass) -> None:
        """Persist what the provider definitively told us once the walk is over."""
        now = utcnow()
        for sub, live in walk.revoked:
            if not sub.active:
                continue
            logger.info("Stripe reports subscription %s inactive (%s), deactivating", sub.id, live.get("status"))
            await self.storage.subscriptions.set(sub.id, sub.model_copy(update={
                "active": False,
                "provider_data": {**(sub.provider_data or {}), **live},
                "updated_at": now,
            }))

        if not email or walk.provider_unavailable:
            return
        user = await self.storage.users.get(email)
        if user is not None and self.policy.is_premium(user.subscription_type):
            logger.info("Downgrading cached tier for %s to free", email)
            await self.storage.users.set(email, user.model_copy(update={
                "subscription_type": FREE,
                "subscription": VerificationSnapshot(verified=False, verified_at=now),
                "updated_at": now,
            }))
