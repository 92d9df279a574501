"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlSessionStore
  - Safe within a single asyncio event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseSessionStore, SessionStoreError
from models.schemas import BotSession, SessionStatus

logger = structlog.get_logger()

UPDATABLE_FIELDS = frozenset({"status", "await_user", "conversation_token"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore(BaseSessionStore):
    """
    Sessions keyed by id, with a (bot_id, user_id) → id index.
    Returns copies so callers never mutate stored state in place.
    """

    def __init__(self):
        self._sessions: dict[str, BotSession] = {}        # id → session
        self._pair_index: dict[tuple[str, str], str] = {}  # (bot_id, user_id) → id
        logger.info("inmemory_store_initialized")

    async def create(self, bot_id: str, user_id: str) -> BotSession:
        # Enforce one record per pair
        await self.delete_all(bot_id, user_id)
        now = _utcnow()
        session = BotSession(
            bot_id=bot_id,
            user_id=user_id,
            conversation_token=user_id,
            status=SessionStatus.OPENED,
            await_user=False,
            created_at=now,
            updated_at=now,
        )
        self._put(session)
        return session.model_copy()

    async def get(self, bot_id: str, user_id: str) -> Optional[BotSession]:
        sid = self._pair_index.get((bot_id, user_id))
        if not sid:
            return None
        session = self._sessions.get(sid)
        return session.model_copy() if session else None

    async def update(self, session_id: str, **fields: Any) -> None:
        current = self._sessions.get(session_id)
        if current is None:
            raise SessionStoreError(f"Session {session_id} not found")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise SessionStoreError(f"Cannot update fields: {sorted(unknown)}")

        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = _utcnow()
        self._put(BotSession.model_validate(data))

    async def delete_all(self, bot_id: str, user_id: str) -> int:
        doomed = [
            sid for sid, s in self._sessions.items()
            if s.bot_id == bot_id and s.user_id == user_id
        ]
        for sid in doomed:
            del self._sessions[sid]
        self._pair_index.pop((bot_id, user_id), None)
        return len(doomed)

    # ── Helpers ───────────────────────────────────────────

    def _put(self, session: BotSession) -> None:
        self._sessions[session.id] = session
        self._pair_index[(session.bot_id, session.user_id)] = session.id

    def count(self) -> int:
        return len(self._sessions)
