"""Entitlement data models — subscriptions, users, usage, decisions.

Records are validated here, at the store boundary, so call sites never have to
patch up missing fields themselves. Field names are snake_case in Python and
camelCase on the wire and in snapshots.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from config.settings import settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_subscription_id(prefix: str, email: str | None = None) -> str:
    """``<prefix>_<email hash>_<random>``; the hash keeps ids greppable per user."""
    parts = [prefix]
    if email:
        parts.append(hashlib.sha256(email.strip().lower().encode()).hexdigest()[:8])
    parts.append(uuid.uuid4().hex[:12])
    return "_".join(parts)


def mirror_subscription_id(provider: str, email: str, provider_subscription_id: str) -> str:
    """Stable id for the local mirror of one provider subscription.

    Same shape as ``new_subscription_id`` but derived from ``(email,
    provider_subscription_id)``, so concurrent writers of one mirror land on
    one record.
    """
    email = email.strip().lower()
    digest = hashlib.sha256(email.encode()).hexdigest()[:8]
    key = uuid.uuid5(uuid.NAMESPACE_URL, f"{provider}:{email}:{provider_subscription_id}")
    return f"{provider}_{digest}_{key.hex[:12]}"


# ── Provenance ───────────────────────────────────────────────────────────────

class SubscriptionSource(str, Enum):
    """Known provenance tags. Stored as plain strings; unknown tags are kept."""
    MANUAL = "manual"
    ADMIN_ADDED = "admin_added"
    FREE_SIGNUP = "free_signup"
    RECOVERED = "recovered"
    STRIPE = "stripe"
    STRIPE_WEBHOOK = "stripe_webhook"
    STRIPE_DIRECT_FETCH = "stripe_direct_fetch"
    STRIPE_API_LINKED = "stripe_api_linked"
    GUMROAD = "gumroad"
    GUMROAD_API = "gumroad_api"
    GUMROAD_API_LINKED = "gumroad_api_linked"
    GUMROAD_API_CREATED = "gumroad_api_created"
    GUMROAD_MANUAL_ENTRY = "gumroad_manual_entry"
    GUMROAD_FIXED = "gumroad_fixed"


class Provenance(str, Enum):
    LOCAL = "local"
    PROVIDER = "provider"


KNOWN_PROVIDERS = ("stripe", "gumroad")


def provider_for_source(source: str | None) -> str | None:
    """Name of the external provider a source tag points at, if any."""
    if not source:
        return None
    for provider in KNOWN_PROVIDERS:
        if provider in source:
            return provider
    return None


# ── Tier classification ──────────────────────────────────────────────────────

class TierClass(str, Enum):
    PREMIUM = "premium"
    FREE = "free"
    UNCLASSIFIED = "unclassified"


class TierPolicy:
    """Which tier strings count as premium.

    Built from configuration so new provider nicknames can be classified
    without a code change. Unclassified tiers are denied premium and logged.
    """

    def __init__(
        self,
        premium: list[str] | None = None,
        free: list[str] | None = None,
        local_authoritative: list[str] | None = None,
        trust_provider_mirrors: bool | None = None,
    ):
        self.premium = frozenset(premium if premium is not None else settings.PREMIUM_TIERS)
        self.free = frozenset(free if free is not None else settings.FREE_TIERS)
        self.local_authoritative = frozenset(
            local_authoritative if local_authoritative is not None
            else settings.LOCAL_AUTHORITATIVE_TIERS
        )
        # False re-verifies provider-sourced records live before granting.
        self.trust_provider_mirrors = (
            trust_provider_mirrors if trust_provider_mirrors is not None
            else settings.TRUST_PROVIDER_MIRRORS
        )
        self._warned: set[str] = set()

    def classify(self, tier: str | None) -> TierClass:
        if tier in self.premium:
            return TierClass.PREMIUM
        if not tier or tier in self.free:
            return TierClass.FREE
        if tier not in self._warned:
            self._warned.add(tier)
            logger.warning("Unclassified subscription tier %r treated as non-premium", tier)
        return TierClass.UNCLASSIFIED

    def is_premium(self, tier: str | None) -> bool:
        return self.classify(tier) is TierClass.PREMIUM

    def is_local_authoritative(self, tier: str | None) -> bool:
        return tier in self.local_authoritative


# ── Records ──────────────────────────────────────────────────────────────────

class Subscription(BaseModel):
    """One grant of access, from any origin."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    email: Optional[str] = None
    active: bool = False
    type: str = "free"
    source: str = SubscriptionSource.MANUAL.value
    provider_subscription_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "providerSubscriptionId", "provider_subscription_id",
            "stripeSubscriptionId", "gumroadSubscriptionId",
        ),
        serialization_alias="providerSubscriptionId",
    )
    provider_customer_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "providerCustomerId", "provider_customer_id", "stripeCustomerId",
        ),
        serialization_alias="providerCustomerId",
    )
    provider_data: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("providerData", "provider_data", "stripeData", "gumroadData"),
        serialization_alias="providerData",
    )
    notes: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("createdAt", "created_at"),
        serialization_alias="createdAt",
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("updatedAt", "updated_at"),
        serialization_alias="updatedAt",
    )

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None

    @field_validator("type", "source")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @property
    def provider(self) -> str | None:
        return provider_for_source(self.source)

    @property
    def provenance(self) -> Provenance:
        return Provenance.PROVIDER if self.provider else Provenance.LOCAL

    def to_record(self) -> dict[str, Any]:
        """Flat JSON-safe dict, as persisted and exported."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class VerificationSnapshot(BaseModel):
    """Cached result of the last reconciliation that touched a user."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    verified: bool = False
    verified_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("verifiedAt", "verified_at"),
        serialization_alias="verifiedAt",
    )
    source: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None


class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    email: str = Field(min_length=1)
    name: Optional[str] = None
    active: bool = True
    subscription_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("subscriptionId", "subscription_id"),
        serialization_alias="subscriptionId",
    )
    subscription_type: str = Field(
        default="free",
        validation_alias=AliasChoices("subscriptionType", "subscription_type"),
        serialization_alias="subscriptionType",
    )
    subscription: Optional[VerificationSnapshot] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("createdAt", "created_at"),
        serialization_alias="createdAt",
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("updatedAt", "updated_at"),
        serialization_alias="updatedAt",
    )

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("subscription_type", mode="before")
    @classmethod
    def _default_type(cls, v: Any) -> Any:
        return v or "free"

    @classmethod
    def new(cls, email: str, name: str | None = None) -> "User":
        email = email.strip().lower()
        return cls(email=email, name=name or email.split("@")[0])

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Usage ────────────────────────────────────────────────────────────────────

USAGE_DETAIL_LIMIT = 50


class UsageDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(default_factory=utcnow)
    message: str = ""
    endpoint: Optional[str] = None
    method: Optional[str] = None
    user_email: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userEmail", "user_email"),
        serialization_alias="userEmail",
    )


class UsageRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identifier: str
    month: str
    message_count: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("messageCount", "message_count"),
        serialization_alias="messageCount",
    )
    details: list[UsageDetail] = Field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Decisions ────────────────────────────────────────────────────────────────

class FeatureSet(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    can_search: bool = Field(default=False, serialization_alias="canSearch")
    can_analyze_profiles: bool = Field(default=False, serialization_alias="canAnalyzeProfiles")
    search_limit: int = Field(default=0, serialization_alias="searchLimit")
    profile_limit: int = Field(default=0, serialization_alias="profileLimit")


PREMIUM_FEATURES = FeatureSet(
    can_search=True, can_analyze_profiles=True, search_limit=100, profile_limit=10,
)
FREE_FEATURES = FeatureSet()


def features_for(tier: str | None, policy: TierPolicy | None = None) -> FeatureSet:
    """Feature flags are fully determined by the tier."""
    policy = policy or TierPolicy()
    if policy.is_premium(tier):
        return PREMIUM_FEATURES.model_copy()
    return FREE_FEATURES.model_copy()


class EntitlementDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active: bool
    type: str
    features: FeatureSet
    has_valid_subscription: bool = Field(serialization_alias="hasValidSubscription")
    email: Optional[str] = None
    subscription_id: Optional[str] = Field(default=None, serialization_alias="subscriptionId")
    source: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
