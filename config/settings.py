"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///topvoices.db")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

    # Gumroad (admin linking only; Gumroad grants are not re-verified)
    GUMROAD_ACCESS_TOKEN = os.getenv("GUMROAD_ACCESS_TOKEN", "").strip("\"'")
    GUMROAD_PRODUCT_ID = os.getenv("GUMROAD_PRODUCT_ID", "").strip("\"'")
    GUMROAD_API_BASE = os.getenv("GUMROAD_API_BASE", "https://api.gumroad.com/v2")
    GUMROAD_TIMEOUT_SECONDS = float(os.getenv("GUMROAD_TIMEOUT_SECONDS", "10"))

    # Downstream chat worker (receives messages that passed the usage gate)
    CHAT_WEBHOOK_URL = os.getenv("CHAT_WEBHOOK_URL", "")
    CHAT_WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("CHAT_WEBHOOK_TIMEOUT_SECONDS", "30"))

    # Usage metering
    FREE_MONTHLY_MESSAGE_LIMIT = int(os.getenv("FREE_MONTHLY_MESSAGE_LIMIT", "5"))

    # Tier classification (comma-separated)
    PREMIUM_TIERS = _csv(os.getenv("PREMIUM_TIERS", "premium,manual_premium,admin_added"))
    FREE_TIERS = _csv(os.getenv("FREE_TIERS", "free"))
    LOCAL_AUTHORITATIVE_TIERS = _csv(
        os.getenv("LOCAL_AUTHORITATIVE_TIERS", "premium,manual_premium,admin_added")
    )
    # false: re-verify active Stripe mirrors live instead of trusting their tier
    TRUST_PROVIDER_MIRRORS = os.getenv("TRUST_PROVIDER_MIRRORS", "true").lower() in ("1", "true", "yes")

    # Where users are sent to buy or renew premium
    SUBSCRIPTION_URL = os.getenv("SUBSCRIPTION_URL", "https://top-rated.pro/l/gpt?wanted=true")

    # Admin API key (for protected admin endpoints)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
