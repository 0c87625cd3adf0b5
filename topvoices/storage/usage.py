"""Usage store — monthly message counters keyed by (identifier, month)."""
from __future__ import annotations

import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topvoices.db.tables import UsageRow
from topvoices.models import USAGE_DETAIL_LIMIT, UsageDetail, UsageRecord

logger = logging.getLogger(__name__)


def _row_to_record(row: UsageRow) -> UsageRecord:
    return UsageRecord(
        identifier=row.identifier,
        month=row.month,
        message_count=row.message_count,
        details=[UsageDetail.model_validate(d) for d in (row.details or [])],
    )


class UsageStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def get(self, identifier: str, month: str) -> UsageRecord | None:
        async with self._session() as session:
            row = await session.get(UsageRow, (identifier, month))
            return _row_to_record(row) if row else None

    async def increment(self, identifier: str, month: str, detail: UsageDetail) -> UsageRecord:
        """Bump the counter and append to the detail ring buffer."""
        try:
            return await self._increment(identifier, month, detail)
        except IntegrityError:
            # Another request created the row between our read and insert
            logger.debug("Usage row for %s/%s created concurrently, retrying", identifier, month)
            return await self._increment(identifier, month, detail)

    async def _increment(self, identifier: str, month: str, detail: UsageDetail) -> UsageRecord:
        entry = detail.model_dump(mode="json", by_alias=True, exclude_none=True)
        async with self._session() as session:
            row = await session.get(UsageRow, (identifier, month))
            if row is None:
                row = UsageRow(identifier=identifier, month=month, message_count=0, details=[])
                session.add(row)
            row.message_count = (row.message_count or 0) + 1
            row.details = (list(row.details or []) + [entry])[-USAGE_DETAIL_LIMIT:]
            await session.commit()
            return _row_to_record(row)

    async def delete(self, identifier: str, month: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(UsageRow).where(UsageRow.identifier == identifier, UsageRow.month == month)
            )
            await session.commit()
