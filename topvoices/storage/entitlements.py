"""Entitlement store — subscription records plus the email → ids index.

Every mutating call commits before it returns, so a successful return means
the write is durable.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topvoices.db.tables import SubscriptionEmailIndexRow, SubscriptionRow
from topvoices.errors import InvalidInputError
from topvoices.models import Subscription

logger = logging.getLogger(__name__)

# Upserts race on first insert; a retry sees the row the other writer created
WRITE_ATTEMPTS = 3


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _row_to_subscription(row: SubscriptionRow) -> Subscription:
    return Subscription.model_validate(row.payload)


def _apply(row: SubscriptionRow, sub: Subscription) -> None:
    row.email = sub.email
    row.active = sub.active
    row.type = sub.type
    row.source = sub.source
    row.provider_subscription_id = sub.provider_subscription_id
    row.payload = sub.to_record()


class EntitlementStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def get(self, subscription_id: str | None) -> Subscription | None:
        if not subscription_id:
            return None
        async with self._session() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            return _row_to_subscription(row) if row else None

    async def set(self, subscription_id: str, record: Subscription | dict[str, Any]) -> Subscription:
        """Upsert a record and index it under its email."""
        if not subscription_id:
            raise InvalidInputError("Subscription ID is required")
        if isinstance(record, Subscription):
            sub = record
        else:
            sub = Subscription.model_validate({**record, "id": subscription_id})
        if sub.id != subscription_id:
            sub = sub.model_copy(update={"id": subscription_id})

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                await self._write(subscription_id, sub)
                return sub
            except IntegrityError:
                if attempt == WRITE_ATTEMPTS:
                    raise
                logger.debug("Subscription %s written concurrently, retrying", subscription_id)
        return sub

    async def _write(self, subscription_id: str, sub: Subscription) -> None:
        async with self._session() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            if row is None:
                row = SubscriptionRow(id=subscription_id)
                session.add(row)
            elif row.email and row.email != sub.email:
                # Record moved to another email; drop the old index entry
                await self._index_remove(session, row.email, [subscription_id])
            _apply(row, sub)
            if sub.email:
                await self._index_add(session, sub.email, subscription_id)
            await session.commit()

    async def delete(self, subscription_id: str) -> None:
        async with self._session() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            if row is None:
                return
            if row.email:
                await self._index_remove(session, row.email, [subscription_id])
            await session.delete(row)
            await session.commit()

    async def get_all(self) -> dict[str, Subscription]:
        async with self._session() as session:
            result = await session.execute(select(SubscriptionRow))
            return {row.id: _row_to_subscription(row) for row in result.scalars()}

    async def get_for_email(self, email: str | None) -> dict[str, Subscription]:
        """All records for an email: index hits plus any the index missed.

        Only records whose stored email matches are returned. Records found
        only by their stored email are written back into the index, and index
        entries pointing at a record owned by another email are dropped
        (read-repair).
        """
        email = _normalize_email(email)
        if not email:
            return {}

        async with self._session() as session:
            indexed = await self._index_ids(session, email)
            found: dict[str, Subscription] = {}
            stale: list[str] = []
            if indexed:
                result = await session.execute(
                    select(SubscriptionRow).where(SubscriptionRow.id.in_(indexed))
                )
                for row in result.scalars():
                    if _normalize_email(row.email) != email:
                        stale.append(row.id)
                        continue
                    found[row.id] = _row_to_subscription(row)

            result = await session.execute(
                select(SubscriptionRow).where(SubscriptionRow.email == email)
            )
            healed = []
            for row in result.scalars():
                if row.id in found:
                    continue
                found[row.id] = _row_to_subscription(row)
                if row.id not in indexed:
                    await self._index_add(session, email, row.id)
                    healed.append(row.id)

            if stale:
                await self._index_remove(session, email, stale)
            if healed or stale:
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent writer indexed the same record first
                    await session.rollback()
                    logger.debug("Index repair for %s raced another writer", email)
                else:
                    if healed:
                        logger.info("Fixed email index for %s, added subscriptions %s", email, healed)
                    if stale:
                        logger.info("Removed stale index entries for %s: %s", email, stale)

        logger.debug("Found %d subscriptions for %s", len(found), email)
        return found

    async def index_for_email(self, email: str) -> set[str]:
        """Raw index lookup, without read-repair."""
        async with self._session() as session:
            return await self._index_ids(session, _normalize_email(email))

    async def index_entries(self) -> dict[str, set[str]]:
        async with self._session() as session:
            result = await session.execute(select(SubscriptionEmailIndexRow))
            entries: dict[str, set[str]] = {}
            for row in result.scalars():
                entries.setdefault(row.email, set()).add(row.subscription_id)
            return entries

    async def add_index_entry(self, email: str, subscription_id: str) -> None:
        email = _normalize_email(email)
        try:
            async with self._session() as session:
                await self._index_add(session, email, subscription_id)
                await session.commit()
        except IntegrityError:
            # Already indexed by a concurrent writer
            logger.debug("Index entry %s -> %s already present", email, subscription_id)

    async def find_by_provider_subscription(
        self, provider_subscription_id: str, email: str | None = None,
    ) -> Subscription | None:
        """Local mirror of a provider subscription, optionally scoped to an email."""
        if not provider_subscription_id:
            return None
        stmt = select(SubscriptionRow).where(
            SubscriptionRow.provider_subscription_id == provider_subscription_id
        )
        if email:
            stmt = stmt.where(SubscriptionRow.email == _normalize_email(email))
        async with self._session() as session:
            result = await session.execute(stmt.order_by(SubscriptionRow.id))
            row = result.scalars().first()
            return _row_to_subscription(row) if row else None

    # ── internals ──

    @staticmethod
    async def _index_ids(session: AsyncSession, email: str) -> set[str]:
        result = await session.execute(
            select(SubscriptionEmailIndexRow.subscription_id).where(
                SubscriptionEmailIndexRow.email == email
            )
        )
        return set(result.scalars())

    @staticmethod
    async def _index_add(session: AsyncSession, email: str, subscription_id: str) -> None:
        existing = await session.get(SubscriptionEmailIndexRow, (email, subscription_id))
        if existing is None:
            session.add(SubscriptionEmailIndexRow(email=email, subscription_id=subscription_id))

    @staticmethod
    async def _index_remove(session: AsyncSession, email: str, subscription_ids: list[str]) -> None:
        await session.execute(
            delete(SubscriptionEmailIndexRow).where(
                SubscriptionEmailIndexRow.email == email,
                SubscriptionEmailIndexRow.subscription_id.in_(subscription_ids),
            )
        )
