"""
Admin reconciliation sweep.

Operator-triggered repair of dangling subscription references. Walks every
user and every email-index entry, so it is never run on a request path.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from topvoices.models import Subscription, SubscriptionSource, User, utcnow
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    recovered: int = 0
    missing_by_source: dict[str, int] = field(default_factory=dict)
    retagged: int = 0
    total_subscriptions: int = 0
    subscriptions_by_source: dict[str, int] = field(default_factory=dict)

    def to_response(self) -> dict[str, Any]:
        return {
            "message": "Scan complete",
            "recovered": self.recovered,
            "missingBySource": self.missing_by_source,
            "retagged": self.retagged,
            "totalSubscriptions": self.total_subscriptions,
            "subscriptionsBySource": self.subscriptions_by_source,
        }


def _recovered_source(subscription_id: str) -> str:
    if "gumroad" in subscription_id:
        return SubscriptionSource.GUMROAD.value
    return SubscriptionSource.MANUAL.value


def _rebuild(subscription_id: str, email: str, user: User) -> Subscription:
    """Minimal record synthesized from the owning user's cached fields."""
    return Subscription(
        id=subscription_id,
        email=email,
        type=user.subscription_type or "premium",
        active=user.active,
        source=_recovered_source(subscription_id),
        created_at=user.created_at,
        updated_at=utcnow(),
    )


async def scan_and_repair(storage: Storage) -> SweepReport:
    logger.info("Starting scan for missing subscriptions")
    report = SweepReport()
    missing: Counter[str] = Counter()

    users = await storage.users.get_all()
    subscriptions = await storage.subscriptions.get_all()

    # Users pointing at records that no longer exist
    for user in users.values():
        sid = user.subscription_id
        if not sid or sid in subscriptions:
            continue
        logger.info("Found user %s with missing subscription %s", user.email, sid)
        sub = await storage.subscriptions.set(sid, _rebuild(sid, user.email, user))
        subscriptions[sid] = sub
        missing[sub.source] += 1

    # Index entries pointing at records that no longer exist
    index = await storage.subscriptions.index_entries()
    logger.info("Found %d email indices to check", len(index))
    for email, ids in index.items():
        for sid in sorted(ids):
            if sid in subscriptions:
                continue
            user = users.get(email)
            if user is None:
                logger.warning("Subscription %s indexed under %s has no record and no owning user", sid, email)
                continue
            logger.info("Found missing subscription %s in email index for %s", sid, email)
            sub = await storage.subscriptions.set(sid, _rebuild(sid, email, user))
            subscriptions[sid] = sub
            missing[sub.source] += 1

    # Gumroad grants whose source tag lost the provider name
    for user in users.values():
        sub = subscriptions.get(user.subscription_id or "")
        if sub is None or "gumroad" not in sub.id or "gumroad" in sub.source:
            continue
        logger.info("Fixing source tag for Gumroad subscription %s", sub.id)
        sub = await storage.subscriptions.set(sub.id, sub.model_copy(update={
            "source": SubscriptionSource.GUMROAD_FIXED.value,
            "updated_at": utcnow(),
        }))
        subscriptions[sub.id] = sub
        report.retagged += 1

    report.recovered = sum(missing.values())
    report.missing_by_source = dict(missing)
    report.total_subscriptions = len(subscriptions)
    report.subscriptions_by_source = dict(Counter(s.source or "unknown" for s in subscriptions.values()))
    logger.info(
        "Scan complete. Recovered %d missing subscriptions, retagged %d",
        report.recovered, report.retagged,
    )
    return report
