"""SQLAlchemy ORM tables for the entitlement store.

Each row keeps the full validated record as JSON in ``payload``; the other
columns are lookup keys copied out of it on every write.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Integer, JSON, String, Index, PrimaryKeyConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SubscriptionRow(Base):
    """Primary subscription records, keyed by subscription id."""
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)
    email = Column(String(320), nullable=True, index=True)
    active = Column(Boolean, nullable=False, default=False)
    type = Column(String(50), nullable=False, default="free")
    source = Column(String(50), nullable=False, default="manual")
    provider_subscription_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_subscriptions_email_provider", "email", "provider_subscription_id"),
    )


class SubscriptionEmailIndexRow(Base):
    """Secondary index: email → subscription ids.

    Written by its own statements, separate from the primary rows, so it can
    drift; reads heal it (see EntitlementStore.get_for_email).
    """
    __tablename__ = "subscription_email_index"

    email = Column(String(320), nullable=False)
    subscription_id = Column(String(255), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("email", "subscription_id"),
        Index("ix_subscription_email_index_subscription", "subscription_id"),
    )


class UserRow(Base):
    __tablename__ = "users"

    email = Column(String(320), primary_key=True)
    subscription_id = Column(String(255), nullable=True, index=True)
    subscription_type = Column(String(50), nullable=False, default="free")
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class UsageRow(Base):
    """Monthly message counter, one per (identifier, YYYY-MM)."""
    __tablename__ = "usage_counters"

    identifier = Column(String(320), nullable=False)
    month = Column(String(7), nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("identifier", "month"),
    )
