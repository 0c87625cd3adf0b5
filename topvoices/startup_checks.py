"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: admin endpoints must not be left open in production
    if is_prod and not settings.ADMIN_API_KEY:
        logger.critical("ADMIN_API_KEY is not set! Admin endpoints would be unusable in production.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set — only local grants can confirm premium")

    if not settings.GUMROAD_ACCESS_TOKEN:
        warnings.append("GUMROAD_ACCESS_TOKEN not set — Gumroad links are recorded as manual entries")

    if not settings.STRIPE_WEBHOOK_SECRET:
        warnings.append("STRIPE_WEBHOOK_SECRET not set — Stripe webhooks will be rejected")

    if not settings.CHAT_WEBHOOK_URL:
        warnings.append("CHAT_WEBHOOK_URL not set — chat relay disabled")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set — admin endpoints disabled")

    overlap = set(settings.PREMIUM_TIERS) & set(settings.FREE_TIERS)
    if overlap:
        warnings.append(
            f"Tiers listed as both premium and free: {', '.join(sorted(overlap))}"
        )

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
