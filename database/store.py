"""
Message Store — persistence for the outbound message log and API keys.

The queue only depends on update_message_status(); the API layer logs a
"pending" row with log_message() before a job is submitted and reads the
history back with get_messages().
"""
from __future__ import annotations

import secrets
import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from config.settings import DatabaseConfig, get_settings
from database.models import ApiKeyRow, Base, MessageRow
from database.session import create_engine, create_session_factory
from models.schemas import MessageDirection, MessageStatus

logger = structlog.get_logger()


class MessageStore:

    def __init__(self, config: DatabaseConfig = None, debug: bool = False):
        self.config = config or get_settings().database
        self.debug = debug
        self._engine: Optional[AsyncEngine] = None
        self._session_factory = None

    async def init(self) -> None:
        """Create the engine and tables. Call once at startup."""
        if self._engine is not None:
            return
        self._engine = create_engine(self.config.url, self.debug)
        self._session_factory = create_session_factory(self._engine)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self._engine.dialect.name,
                    tables=list(Base.metadata.tables.keys()))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional async session scope."""
        if self._session_factory is None:
            await self.init()
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ── Messages ──────────────────────────────────────────────

    async def log_message(
        self,
        jid: str,
        message: str,
        direction: str = MessageDirection.SENT.value,
        status: str = MessageStatus.PENDING.value,
    ) -> int:
        row = MessageRow(
            jid=jid,
            message=message,
            type=MessageDirection(direction).value,
            status=MessageStatus(status).value,
        )
        async with self.session() as db:
            db.add(row)
            await db.flush()
            message_id = row.id
        logger.debug("message_logged", message_id=message_id, jid=jid, status=row.status)
        return message_id

    async def update_message_status(self, message_id: Any, status: str) -> int:
        status = MessageStatus(status).value
        async with self.session() as db:
            result = await db.execute(
                update(MessageRow).where(MessageRow.id == int(message_id)).values(status=status)
            )
        logger.debug("message_status_updated", message_id=message_id, status=status)
        return result.rowcount

    async def get_message(self, message_id: Any) -> Optional[dict[str, Any]]:
        async with self.session() as db:
            row = await db.get(MessageRow, int(message_id))
            return row.to_dict() if row else None

    async def get_messages(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self.session() as db:
            result = await db.execute(
                select(MessageRow).order_by(MessageRow.id.desc()).limit(limit)
            )
            return [row.to_dict() for row in result.scalars()]

    # ── API keys ──────────────────────────────────────────────

    async def create_api_key(self, name: str = "", key: str = None) -> str:
        key = key or secrets.token_hex(24)
        async with self.session() as db:
            db.add(ApiKeyRow(key=key, name=name))
        logger.info("api_key_created", name=name)
        return key

    async def validate_api_key(self, key: str) -> bool:
        if not key:
            return False
        async with self.session() as db:
            result = await db.execute(
                select(ApiKeyRow.id).where(ApiKeyRow.key == key, ApiKeyRow.is_active.is_(True))
            )
            return result.first() is not None
