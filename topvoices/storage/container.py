"""Storage container — owns the engine and the three stores.

Constructed explicitly and handed to every consumer; nothing here is a
module-level singleton, so tests get a fresh instance each time.
"""
from __future__ import annotations

import logging

from sqlalchemy import text

from config.settings import settings
from topvoices.db.engine import build_engine, build_session_factory
from topvoices.db.tables import Base
from topvoices.storage.entitlements import EntitlementStore
from topvoices.storage.usage import UsageStore
from topvoices.storage.users import UserStore

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.engine = build_engine(self.database_url)
        self.session_factory = build_session_factory(self.engine)
        self.subscriptions = EntitlementStore(self.session_factory)
        self.users = UserStore(self.session_factory)
        self.usage = UsageStore(self.session_factory)
        self.ready = False

    async def init(self) -> "Storage":
        """Create tables if needed and mark the storage ready."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.ready = True
        logger.info("Storage ready (%s)", self.engine.url.render_as_string(hide_password=True))
        return self

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database ping failed")
            return False
        return True

    async def close(self) -> None:
        await self.engine.dispose()
        self.ready = False
