"""
WhatsApp Channel — delivery through an HTTP WhatsApp gateway instance.

Provides:
- Number extraction from remote identities (``<number>@s.whatsapp.net``)
- Outbound: text, image with caption, presence (composing / paused)
- Gateway errors mapped to ChannelError

Gateway routes (relative to base_url):
  POST /message/sendText/{instance}     {"number", "text", "delay"}
  POST /message/sendMedia/{instance}    {"number", "mediatype", "media", "caption", "delay"}
  POST /chat/sendPresence/{instance}    {"number", "presence", "delay"}
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelError, MessagingChannel
from models.schemas import PresenceState

logger = structlog.get_logger()


class WhatsAppGatewayChannel(MessagingChannel):
    """Sends messages through one named gateway instance."""

    name = "whatsapp"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        instance_name: str = "default",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(instance_name)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"apikey": self.api_key},
                timeout=self.timeout,
            )
        return self.client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{path}/{self.instance_name}"
        try:
            response = await self._get_client().post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChannelError(
                f"Gateway returned {e.response.status_code} for {path}: {e.response.text[:300]}",
                channel=self.name,
                retryable=e.response.status_code >= 500,
            ) from e
        except httpx.HTTPError as e:
            raise ChannelError(f"Gateway request failed for {path}: {e}", channel=self.name,
                               retryable=True) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    # ── Send ──────────────────────────────────────────────────

    async def send_text(self, user_id: str, text: str, delay_ms: int = 1000) -> dict[str, Any]:
        number = self.number_from(user_id)
        result = await self._post("/message/sendText", {
            "number": number,
            "text": text,
            "delay": delay_ms,
        })
        logger.info("whatsapp_text_sent", to=number, chars=len(text))
        return result

    async def send_media(
        self, user_id: str, media_url: str, caption: str = "", delay_ms: int = 1000,
    ) -> dict[str, Any]:
        number = self.number_from(user_id)
        result = await self._post("/message/sendMedia", {
            "number": number,
            "mediatype": "image",
            "media": media_url,
            "caption": caption,
            "delay": delay_ms,
        })
        logger.info("whatsapp_media_sent", to=number, media=media_url)
        return result

    async def set_presence(self, user_id: str, state: PresenceState) -> None:
        await self._post("/chat/sendPresence", {
            "number": self.number_from(user_id),
            "presence": state.value,
            "delay": 0,
        })

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
