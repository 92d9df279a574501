"""
Backend Dispatch — one request/response adapter per bot mode.

Every adapter turns (session, bot, user, content) into a backend request,
sends it, and normalises the reply into a DispatchOutcome:

    mode        endpoint               reply                 conversation token
    chat        chat-messages          answer                kept once established
    completion  completion-messages    answer                kept once established
    agent       chat-messages (SSE)    agent_message frames  first id in the stream
    workflow    workflows/run          data.outputs.text     never set

Adding a mode means adding one subclass and decorating it with
``@register_adapter``; nothing else branches on the mode.

Usage:
    adapter = create_dispatch_adapter(bot.mode, timeout=60)
    outcome = await adapter.dispatch(client, session, bot, user_id,
                                     display_name, content, server)
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx

from backend.stream import StreamIdleTimeout, aggregate_agent_stream
from models.schemas import BotConfig, BotMode, BotSession, DispatchOutcome, ServerContext

logger = structlog.get_logger()

IMAGE_MARKER = "imageMessage"


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class DispatchError(Exception):
    """A backend call failed. ``payload`` holds the backend's error body when it sent one."""

    def __init__(
        self,
        message: str,
        payload: Any = None,
        mode: str = "",
        status_code: Optional[int] = None,
    ):
        self.payload = payload
        self.mode = mode
        self.status_code = status_code
        super().__init__(message)


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:1000]


# ──────────────────────────────────────────────────────────────
#  Image attachments
# ──────────────────────────────────────────────────────────────

def split_image_content(content: str) -> tuple[str, Optional[str]]:
    """
    Split an inbound image marker into (text, media_url).

    ``imageMessage|https://host/a.jpg?x=1|caption text`` →
    ``("caption text", "https://host/a.jpg")``. Without a caption the whole
    content stays the text. Plain content returns ``(content, None)``.
    """
    if not content or IMAGE_MARKER not in content:
        return content, None
    parts = content.split("|")
    if len(parts) < 2 or not parts[1]:
        return content, None
    media_url = parts[1].split("?")[0]
    caption = "|".join(parts[2:])
    return (caption or content), media_url


# ──────────────────────────────────────────────────────────────
#  Adapter base
# ──────────────────────────────────────────────────────────────

class DispatchAdapter(abc.ABC):
    """Shapes, sends and parses one kind of backend request."""

    mode: BotMode
    endpoint: str
    response_mode: str = "blocking"
    query_in_inputs: bool = False          # query goes in inputs.query instead of top-level
    sends_conversation_id: bool = True

    def __init__(self, timeout: float = 60.0, stream_idle_timeout: Optional[float] = 120.0):
        self.timeout = timeout
        self.stream_idle_timeout = stream_idle_timeout

    # ── Request shaping ───────────────────────────────────────

    def build_payload(
        self,
        session: BotSession,
        user_id: str,
        display_name: str,
        content: str,
        server: ServerContext,
    ) -> dict[str, Any]:
        text, media_url = split_image_content(content)

        inputs: dict[str, Any] = {}
        if self.query_in_inputs:
            inputs["query"] = text
        inputs.update({
            "remoteJid": user_id,
            "pushName": display_name,
            "instanceName": server.instance_name,
            "serverUrl": server.server_url,
            "apiKey": server.api_key,
        })

        payload: dict[str, Any] = {"inputs": inputs}
        if not self.query_in_inputs:
            payload["query"] = text
        payload["response_mode"] = self.response_mode
        if self.sends_conversation_id and session.has_conversation:
            payload["conversation_id"] = session.conversation_token
        payload["user"] = user_id

        if media_url:
            payload["files"] = [{
                "type": "image",
                "transfer_method": "remote_url",
                "url": media_url,
            }]
        return payload

    def url_for(self, bot: BotConfig) -> str:
        return f"{bot.api_url.rstrip('/')}/{self.endpoint}"

    @staticmethod
    def headers_for(bot: BotConfig) -> dict[str, str]:
        return {"Authorization": f"Bearer {bot.api_key}"}

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch(
        self,
        client: httpx.AsyncClient,
        session: BotSession,
        bot: BotConfig,
        user_id: str,
        display_name: str,
        content: str,
        server: ServerContext,
    ) -> DispatchOutcome:
        payload = self.build_payload(session, user_id, display_name, content, server)
        logger.info("backend_dispatch",
                    mode=self.mode.value,
                    bot_id=bot.id,
                    user_id=user_id,
                    has_conversation="conversation_id" in payload,
                    has_image="files" in payload)
        return await self._exchange(client, bot, payload, session)

    async def _exchange(
        self,
        client: httpx.AsyncClient,
        bot: BotConfig,
        payload: dict[str, Any],
        session: BotSession,
    ) -> DispatchOutcome:
        data = await self._post_json(client, bot, payload)
        return self.parse_response(data, session)

    async def _post_json(
        self, client: httpx.AsyncClient, bot: BotConfig, payload: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            response = await client.post(
                self.url_for(bot), json=payload,
                headers=self.headers_for(bot), timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise DispatchError(f"Backend request failed: {e}", mode=self.mode.value) from e

        if response.is_error:
            raise DispatchError(
                f"Backend returned {response.status_code}",
                payload=_error_payload(response),
                mode=self.mode.value,
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DispatchError("Backend returned malformed JSON",
                                payload=response.text[:1000], mode=self.mode.value) from e
        if not isinstance(data, dict):
            raise DispatchError("Backend returned a non-object body",
                                payload=data, mode=self.mode.value)
        return data

    @abc.abstractmethod
    def parse_response(self, data: dict[str, Any], session: BotSession) -> DispatchOutcome:
        ...

    def _continued_token(self, data: dict[str, Any], session: BotSession) -> Optional[str]:
        if session.has_conversation:
            return session.conversation_token
        return data.get("conversation_id")

    def _answer(self, data: dict[str, Any]) -> str:
        answer = data.get("answer")
        if answer is None:
            raise DispatchError("Backend response has no answer", payload=data, mode=self.mode.value)
        return str(answer)


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

_ADAPTERS: dict[BotMode, type[DispatchAdapter]] = {}


def register_adapter(cls: type[DispatchAdapter]) -> type[DispatchAdapter]:
    _ADAPTERS[cls.mode] = cls
    return cls


def create_dispatch_adapter(mode: BotMode, **kwargs) -> DispatchAdapter:
    """Factory: the adapter for ``mode``. kwargs go to the adapter constructor."""
    try:
        cls = _ADAPTERS[BotMode(mode)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"No dispatch adapter for bot mode {mode!r}") from e
    return cls(**kwargs)


def registered_modes() -> list[BotMode]:
    return list(_ADAPTERS)


# ──────────────────────────────────────────────────────────────
#  Modes
# ──────────────────────────────────────────────────────────────

@register_adapter
class ChatModeAdapter(DispatchAdapter):
    mode = BotMode.CHAT
    endpoint = "chat-messages"

    def parse_response(self, data: dict[str, Any], session: BotSession) -> DispatchOutcome:
        return DispatchOutcome(
            reply_text=self._answer(data),
            conversation_token=self._continued_token(data, session),
        )


@register_adapter
class CompletionModeAdapter(DispatchAdapter):
    mode = BotMode.COMPLETION
    endpoint = "completion-messages"
    query_in_inputs = True

    def parse_response(self, data: dict[str, Any], session: BotSession) -> DispatchOutcome:
        return DispatchOutcome(
            reply_text=self._answer(data),
            conversation_token=self._continued_token(data, session),
        )


@register_adapter
class AgentStreamModeAdapter(DispatchAdapter):
    """Streams the reply; the outcome exists only once the stream has ended."""

    mode = BotMode.AGENT
    endpoint = "chat-messages"
    response_mode = "streaming"

    async def _exchange(
        self,
        client: httpx.AsyncClient,
        bot: BotConfig,
        payload: dict[str, Any],
        session: BotSession,
    ) -> DispatchOutcome:
        # Read timeout is left to the idle timeout of the aggregator
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with client.stream(
                "POST", self.url_for(bot), json=payload,
                headers=self.headers_for(bot), timeout=timeout,
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise DispatchError(
                        f"Backend returned {response.status_code}",
                        payload=_error_payload(response),
                        mode=self.mode.value,
                        status_code=response.status_code,
                    )
                return await aggregate_agent_stream(
                    response.aiter_lines(), idle_timeout=self.stream_idle_timeout,
                )
        except httpx.HTTPError as e:
            raise DispatchError(f"Backend stream failed: {e}", mode=self.mode.value) from e
        except StreamIdleTimeout as e:
            raise DispatchError(str(e), mode=self.mode.value) from e

    def parse_response(self, data: dict[str, Any], session: BotSession) -> DispatchOutcome:
        raise DispatchError("Agent mode streams its reply", mode=self.mode.value)


@register_adapter
class WorkflowModeAdapter(DispatchAdapter):
    """Workflows are stateless: no conversation id is sent or kept."""

    mode = BotMode.WORKFLOW
    endpoint = "workflows/run"
    query_in_inputs = True
    sends_conversation_id = False

    def parse_response(self, data: dict[str, Any], session: BotSession) -> DispatchOutcome:
        try:
            text = data["data"]["outputs"]["text"]
        except (KeyError, TypeError) as e:
            raise DispatchError("Workflow response has no data.outputs.text",
                                payload=data, mode=self.mode.value) from e
        return DispatchOutcome(reply_text="" if text is None else str(text),
                               conversation_token=None)
