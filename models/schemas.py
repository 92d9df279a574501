"""
Core data models for the ChatRelay system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"


class BotMode(str, Enum):
    CHAT = "chat"                   # chat-messages, blocking
    COMPLETION = "completion"       # completion-messages, blocking
    AGENT = "agent"                 # chat-messages, streaming
    WORKFLOW = "workflow"           # workflows/run, blocking


class PresenceState(str, Enum):
    COMPOSING = "composing"
    PAUSED = "paused"


# ──────────────────────────────────────────────────────────────
#  Session: one conversation between a user and a bot
# ──────────────────────────────────────────────────────────────

class BotSession(BaseModel):
    """
    Persisted state of one conversation between a user identity and a bot.

    ``conversation_token`` starts out equal to ``user_id``: that sentinel
    means the backend has not assigned a conversation yet.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    bot_id: str
    user_id: str                              # remote identity, e.g. "5511999999999@s.whatsapp.net"
    conversation_token: str
    status: SessionStatus = SessionStatus.OPENED
    await_user: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_conversation(self) -> bool:
        return bool(self.conversation_token) and self.conversation_token != self.user_id

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPENED


# ──────────────────────────────────────────────────────────────
#  Bot configuration: immutable per-bot settings
# ──────────────────────────────────────────────────────────────

class BotSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    expire: int = 0                 # idle minutes before the session expires, 0 = never
    keep_open: bool = False         # close instead of delete on expiry/finish
    keyword_finish: str = ""        # case-insensitive exact match ends the session
    unknown_message: str = ""       # sent when the inbound content is empty
    delay_message: int = 1000       # ms between delivered messages

    @property
    def delivery_delay(self) -> int:
        return self.delay_message or 1000


class BotConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    api_url: str                    # backend base endpoint, e.g. https://api.dify.ai/v1
    api_key: str                    # bearer token for the backend
    mode: BotMode = BotMode.CHAT
    enabled: bool = True
    description: str = ""
    settings: BotSettings = Field(default_factory=BotSettings)


class ServerContext(BaseModel):
    """Values injected into every backend request so the bot can call back into us."""
    model_config = ConfigDict(frozen=True)

    server_url: str = ""
    api_key: str = ""
    instance_name: str = ""


# ──────────────────────────────────────────────────────────────
#  Dispatch outcome & message parts (not persisted)
# ──────────────────────────────────────────────────────────────

class DispatchOutcome(BaseModel):
    reply_text: str = ""
    conversation_token: Optional[str] = None   # None → leave the stored token alone


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class MediaPart(BaseModel):
    kind: Literal["media"] = "media"
    caption: str
    media_url: str


MessagePart = Union[TextPart, MediaPart]


# ──────────────────────────────────────────────────────────────
#  Inbound turn: request body for the HTTP surface
# ──────────────────────────────────────────────────────────────

class InboundTurn(BaseModel):
    user_id: str
    content: Optional[str] = None
    display_name: str = ""
