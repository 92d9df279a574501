"""
Session State Machine — lifecycle of one user/bot conversation.

States:
  absent   no record; the next turn creates one
  opened   turns are dispatched to the backend
  closed   turns are ignored until the session is reopened externally

Flow per inbound turn:
  evaluate(session, bot, content, now)   pure, returns a SessionDecision
    → apply(decision, ...)               store side effects
    → orchestrator acts on decision.action

Rules, first match wins:
  1. closed session                          → ignore
  2. opened and idle longer than expire      → retire (close|delete), fresh session
  3. no session                              → fresh session
  4. empty content                           → fallback message
  5. content equals keyword_finish           → retire (close|delete), finish
  6. otherwise                               → dispatch

Expiry uses whole minutes and a strict comparison: with expire=30 a session
idle for exactly 30 minutes is still alive.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from database.store_base import BaseSessionStore
from models.schemas import BotConfig, BotSession, SessionStatus

logger = structlog.get_logger()


class TurnAction(str, Enum):
    IGNORE = "ignore"
    DISPATCH = "dispatch"
    FINISH = "finish"
    FALLBACK = "fallback"


class RetireMode(str, Enum):
    CLOSE = "close"
    DELETE = "delete"


# ──────────────────────────────────────────────────────────────
#  Decision
# ──────────────────────────────────────────────────────────────

class SessionDecision:
    """What to do with one inbound turn."""

    def __init__(
        self,
        action: TurnAction,
        retire: Optional[RetireMode] = None,
        fresh: bool = False,
        reason: str = "",
    ):
        self.action = action
        self.retire = retire
        self.fresh = fresh
        self.reason = reason

    @property
    def dispatches(self) -> bool:
        return self.action == TurnAction.DISPATCH

    def __eq__(self, other):
        if not isinstance(other, SessionDecision):
            return NotImplemented
        return (self.action, self.retire, self.fresh) == (other.action, other.retire, other.fresh)

    def __repr__(self):
        extra = []
        if self.retire:
            extra.append(f"retire={self.retire.value}")
        if self.fresh:
            extra.append("fresh")
        suffix = f" [{', '.join(extra)}]" if extra else ""
        return f"<SessionDecision {self.action.value}{suffix}>"


def idle_minutes(session: BotSession, now: datetime) -> int:
    updated = session.updated_at
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return int((now - updated).total_seconds() // 60)


def is_expired(session: BotSession, bot: BotConfig, now: datetime) -> bool:
    expire = bot.settings.expire or 0
    return expire > 0 and idle_minutes(session, now) > expire


def matches_finish_keyword(content: str, keyword: str) -> bool:
    return bool(keyword) and content.lower() == keyword.lower()


# ──────────────────────────────────────────────────────────────
#  State machine
# ──────────────────────────────────────────────────────────────

class SessionStateMachine:
    """Decides each turn's fate and applies the resulting session changes."""

    def __init__(self, store: BaseSessionStore):
        self.store = store

    def evaluate(
        self,
        session: Optional[BotSession],
        bot: BotConfig,
        content: Optional[str],
        now: Optional[datetime] = None,
    ) -> SessionDecision:
        now = now or datetime.now(timezone.utc)
        settings = bot.settings
        retire_mode = RetireMode.CLOSE if settings.keep_open else RetireMode.DELETE

        if session is not None and not session.is_open:
            return SessionDecision(TurnAction.IGNORE, reason="session_closed")

        retire: Optional[RetireMode] = None
        fresh = False
        reason = ""
        if session is not None and is_expired(session, bot, now):
            retire, fresh, reason = retire_mode, True, "expired"
        elif session is None:
            fresh, reason = True, "new_session"

        if not content or not content.strip():
            return SessionDecision(TurnAction.FALLBACK, retire=retire, fresh=fresh,
                                   reason="empty_content")

        if not fresh and matches_finish_keyword(content, settings.keyword_finish):
            return SessionDecision(TurnAction.FINISH, retire=retire_mode, reason="finish_keyword")

        return SessionDecision(TurnAction.DISPATCH, retire=retire, fresh=fresh,
                               reason=reason or "continue")

    async def apply(
        self,
        decision: SessionDecision,
        session: Optional[BotSession],
        bot: BotConfig,
        user_id: str,
    ) -> Optional[BotSession]:
        """
        Persist the decision. Returns the session the turn continues with,
        or None when the turn ends here (ignored or finished).
        """
        if decision.action == TurnAction.IGNORE:
            return None

        if decision.retire and session is not None:
            await self.retire(session, bot, user_id, decision.retire)
            logger.info("session_retired",
                        bot_id=bot.id, user_id=user_id,
                        mode=decision.retire.value, reason=decision.reason)

        if decision.action == TurnAction.FINISH:
            return None

        if decision.fresh:
            created = await self.store.create(bot.id, user_id)
            logger.info("session_created", bot_id=bot.id, user_id=user_id,
                        session_id=created.id, reason=decision.reason)
            return created

        await self.store.update(session.id, status=SessionStatus.OPENED, await_user=False)
        return session.model_copy(update={"status": SessionStatus.OPENED, "await_user": False})

    async def retire(
        self, session: BotSession, bot: BotConfig, user_id: str, mode: RetireMode,
    ) -> None:
        if mode == RetireMode.CLOSE:
            await self.store.update(session.id, status=SessionStatus.CLOSED)
        else:
            await self.store.delete_all(bot.id, user_id)
