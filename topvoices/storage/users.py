"""User store — one record per email."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topvoices.db.tables import UserRow
from topvoices.errors import InvalidInputError
from topvoices.models import User
from topvoices.storage.entitlements import WRITE_ATTEMPTS

logger = logging.getLogger(__name__)


class UserStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def get(self, email: str | None) -> User | None:
        if not email:
            return None
        async with self._session() as session:
            row = await session.get(UserRow, email.strip().lower())
            return User.model_validate(row.payload) if row else None

    async def set(self, email: str, record: User | dict[str, Any]) -> User:
        if not email:
            raise InvalidInputError("Email is required")
        email = email.strip().lower()
        if isinstance(record, User):
            user = record
        else:
            user = User.model_validate({**record, "email": email})
        if user.email != email:
            user = user.model_copy(update={"email": email})

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                await self._write(email, user)
                return user
            except IntegrityError:
                if attempt == WRITE_ATTEMPTS:
                    raise
                logger.debug("User %s created concurrently, retrying", email)
        return user

    async def _write(self, email: str, user: User) -> None:
        async with self._session() as session:
            row = await session.get(UserRow, email)
            if row is None:
                row = UserRow(email=email)
                session.add(row)
            row.subscription_id = user.subscription_id
            row.subscription_type = user.subscription_type
            row.payload = user.to_record()
            await session.commit()

    async def delete(self, email: str) -> None:
        async with self._session() as session:
            row = await session.get(UserRow, email.strip().lower())
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def get_all(self) -> dict[str, User]:
        async with self._session() as session:
            result = await session.execute(select(UserRow))
            return {row.email: User.model_validate(row.payload) for row in result.scalars()}
