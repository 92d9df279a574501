"""Shared test fixtures for ChatRelay."""
import json
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from channels.base import LoggingChannel
from database.store_memory import InMemorySessionStore
from models.schemas import (
    BotConfig, BotMode, BotSession, BotSettings, PresenceState, ServerContext, SessionStatus,
)

USER = "5511999999999@s.whatsapp.net"
NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class RecordingChannel(LoggingChannel):
    """LoggingChannel that also keeps presence changes, for assertions."""

    def __init__(self, instance_name: str = "support"):
        super().__init__(instance_name)
        self.presence: list[tuple[str, PresenceState]] = []

    async def set_presence(self, user_id: str, state: PresenceState) -> None:
        self.presence.append((user_id, state))
        await super().set_presence(user_id, state)

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent if m["type"] == "text"]


def make_bot(mode: BotMode = BotMode.CHAT, **settings: Any) -> BotConfig:
    return BotConfig(
        id="bot-1",
        api_url="https://backend.test/v1",
        api_key="app-secret",
        mode=mode,
        settings=BotSettings(**settings),
    )


def make_session(
    conversation_token: str = USER,
    status: SessionStatus = SessionStatus.OPENED,
    idle: timedelta = timedelta(minutes=1),
    **kwargs: Any,
) -> BotSession:
    return BotSession(
        id=kwargs.pop("id", "s-1"),
        bot_id=kwargs.pop("bot_id", "bot-1"),
        user_id=kwargs.pop("user_id", USER),
        conversation_token=conversation_token,
        status=status,
        updated_at=NOW - idle,
        **kwargs,
    )


def sse(*events: dict) -> bytes:
    """Encode events the way the backend streams them."""
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def bot() -> BotConfig:
    return make_bot()


@pytest.fixture
def server() -> ServerContext:
    return ServerContext(server_url="https://relay.test", api_key="relay-key", instance_name="support")


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()
