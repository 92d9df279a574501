"""
SqlSessionStore — Portable SQL session store for PostgreSQL, MySQL, SQLite.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import delete, select, update

from database.models import IntegrationSessionRow
from database.session import close_db, get_session, init_db
from database.store_base import BaseSessionStore, SessionStoreError
from database.store_memory import UPDATABLE_FIELDS
from models.schemas import BotSession, SessionStatus

logger = structlog.get_logger()


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: Optional[str] = None):
        self.db_url = db_url

    async def open(self) -> None:
        await init_db(self.db_url)

    async def close(self) -> None:
        await close_db()

    async def create(self, bot_id: str, user_id: str) -> BotSession:
        async with get_session() as db:
            await db.execute(
                delete(IntegrationSessionRow).where(
                    IntegrationSessionRow.bot_id == bot_id,
                    IntegrationSessionRow.user_id == user_id,
                )
            )
            row = IntegrationSessionRow(
                bot_id=bot_id,
                user_id=user_id,
                conversation_token=user_id,
                status=SessionStatus.OPENED.value,
                await_user=False,
            )
            db.add(row)
            await db.flush()
            return self._row_to_session(row)

    async def get(self, bot_id: str, user_id: str) -> Optional[BotSession]:
        async with get_session() as db:
            stmt = select(IntegrationSessionRow).where(
                IntegrationSessionRow.bot_id == bot_id,
                IntegrationSessionRow.user_id == user_id,
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def update(self, session_id: str, **fields: Any) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise SessionStoreError(f"Cannot update fields: {sorted(unknown)}")
        values = {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}

        async with get_session() as db:
            stmt = (
                update(IntegrationSessionRow)
                .where(IntegrationSessionRow.id == session_id)
                .values(**values, updated_at=datetime.now(timezone.utc))
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                raise SessionStoreError(f"Session {session_id} not found")

    async def delete_all(self, bot_id: str, user_id: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                delete(IntegrationSessionRow).where(
                    IntegrationSessionRow.bot_id == bot_id,
                    IntegrationSessionRow.user_id == user_id,
                )
            )
            return result.rowcount or 0

    @staticmethod
    def _row_to_session(row: IntegrationSessionRow) -> BotSession:
        return BotSession(
            id=row.id,
            bot_id=row.bot_id,
            user_id=row.user_id,
            conversation_token=row.conversation_token,
            status=SessionStatus(row.status),
            await_user=row.await_user,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
