"""
Messaging Channel — the outbound side of a chat network.

Provides:
- ChannelError: structured channel failure
- MessagingChannel: abstract base every channel implements
  (send text, send media, presence indicators)
- LoggingChannel: development channel that only logs what it would send
"""
from __future__ import annotations

import abc
import structlog
from typing import Any

from models.schemas import PresenceState

logger = structlog.get_logger()


class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class MessagingChannel(abc.ABC):
    """
    Base class for messaging channels.

    ``user_id`` is the remote identity as delivered by the network
    (e.g. ``5511999999999@s.whatsapp.net``). ``delay_ms`` is the pause the
    network should apply before the message shows up.
    """

    name: str = "base"

    def __init__(self, instance_name: str = "default"):
        self.instance_name = instance_name
        self._subscribed: set[str] = set()

    @abc.abstractmethod
    async def send_text(self, user_id: str, text: str, delay_ms: int = 1000) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_media(
        self, user_id: str, media_url: str, caption: str = "", delay_ms: int = 1000,
    ) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def set_presence(self, user_id: str, state: PresenceState) -> None:
        ...

    async def subscribe_presence(self, user_id: str) -> None:
        """Ask to receive presence updates for the user. Idempotent."""
        self._subscribed.add(user_id)

    def is_subscribed(self, user_id: str) -> bool:
        return user_id in self._subscribed

    @staticmethod
    def number_from(user_id: str) -> str:
        """``5511999999999@s.whatsapp.net`` → ``5511999999999``."""
        return user_id.split("@")[0]

    async def shutdown(self) -> None:
        pass


class LoggingChannel(MessagingChannel):
    """Logs outbound traffic instead of sending it. Used when no gateway is configured."""

    name = "logging"

    def __init__(self, instance_name: str = "default"):
        super().__init__(instance_name)
        self.sent: list[dict[str, Any]] = []

    async def send_text(self, user_id: str, text: str, delay_ms: int = 1000) -> dict[str, Any]:
        record = {"type": "text", "number": self.number_from(user_id), "text": text, "delay": delay_ms}
        self.sent.append(record)
        logger.info("channel_text_logged", to=record["number"], chars=len(text))
        return {"status": "logged"}

    async def send_media(
        self, user_id: str, media_url: str, caption: str = "", delay_ms: int = 1000,
    ) -> dict[str, Any]:
        record = {
            "type": "media", "number": self.number_from(user_id),
            "media": media_url, "caption": caption, "delay": delay_ms,
        }
        self.sent.append(record)
        logger.info("channel_media_logged", to=record["number"], media=media_url)
        return {"status": "logged"}

    async def set_presence(self, user_id: str, state: PresenceState) -> None:
        logger.debug("channel_presence_logged", to=self.number_from(user_id), state=state.value)
