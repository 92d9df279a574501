"""
Orchestrator — The central coordinator for one inbound turn.

Flow:
  inbound turn → per-session lock → re-read session from the store
    → state machine decides (ignore | fallback | finish | dispatch)
    → apply lifecycle changes (close / delete / create / refresh)
    → presence "composing" → mode adapter calls the backend → presence "paused"
    → transcode reply → deliver parts in order
    → one session update (opened, awaiting user, conversation token)

Nothing raised while handling a turn reaches the caller: failures are
logged and the turn is dropped. A backend failure leaves the stored session
exactly as the state machine left it.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from backend.dispatch import DispatchAdapter, DispatchError, create_dispatch_adapter
from channels.base import MessagingChannel
from context.session_machine import SessionStateMachine, TurnAction
from core.locks import SessionLocks
from core.transcoder import transcode_reply
from database.store_base import BaseSessionStore
from models.schemas import (
    BotConfig, BotMode, BotSession, DispatchOutcome, MediaPart, MessagePart,
    PresenceState, ServerContext, SessionStatus, TextPart,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """
    Entry point for inbound turns.

    This class:
    1. Serialises turns per (bot, user)
    2. Runs the session state machine
    3. Dispatches to the adapter for the bot's mode
    4. Delivers the transcoded reply and persists the session
    """

    def __init__(
        self,
        store: BaseSessionStore,
        server: ServerContext = None,
        client: httpx.AsyncClient = None,
        dispatch_timeout: float = 60.0,
        stream_idle_timeout: Optional[float] = 120.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.server = server or ServerContext()
        self.state_machine = SessionStateMachine(store)
        self.locks = SessionLocks()
        self.dispatch_timeout = dispatch_timeout
        self.stream_idle_timeout = stream_idle_timeout
        self._clock = clock
        self._client = client
        self._owns_client = client is None
        self._adapters: dict[BotMode, DispatchAdapter] = {}

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def handle_turn(
        self,
        channel: MessagingChannel,
        user_id: str,
        bot: BotConfig,
        content: Optional[str],
        display_name: str = "",
        session: Optional[BotSession] = None,
    ) -> None:
        """
        Process one inbound turn end to end.

        ``session`` is what the caller loaded, if anything. It is only a hint:
        the record is re-read from the store once the session lock is held.
        """
        log = logger.bind(bot_id=bot.id, user_id=user_id, mode=bot.mode.value)
        if not bot.enabled:
            log.info("turn_ignored", reason="bot_disabled")
            return

        try:
            async with self.locks.hold(bot.id, user_id):
                await self._process_turn(channel, user_id, bot, content, display_name, session, log)
        except DispatchError as e:
            log.error("backend_dispatch_failed",
                      error=str(e), status_code=e.status_code, payload=e.payload)
        except Exception as e:
            log.error("turn_failed", error=str(e), error_type=type(e).__name__)

    async def _process_turn(
        self,
        channel: MessagingChannel,
        user_id: str,
        bot: BotConfig,
        content: Optional[str],
        display_name: str,
        hint: Optional[BotSession],
        log,
    ) -> None:
        current = await self.store.get(bot.id, user_id)
        if hint is not None and (current is None or current.id != hint.id):
            log.debug("session_hint_stale", hint_id=hint.id)

        decision = self.state_machine.evaluate(current, bot, content, self._clock())
        log.debug("turn_evaluated", decision=repr(decision))
        if decision.action == TurnAction.IGNORE:
            log.info("turn_ignored", reason=decision.reason)
            return

        active = await self.state_machine.apply(decision, current, bot, user_id)

        if decision.action == TurnAction.FINISH:
            log.info("session_finished", keep_open=bot.settings.keep_open)
            return

        if not decision.dispatches:
            if bot.settings.unknown_message:
                await self.deliver(channel, user_id,
                                   [TextPart(text=bot.settings.unknown_message)],
                                   bot.settings.delivery_delay)
                log.info("fallback_message_sent")
            return

        outcome = await self.dispatch(channel, active, bot, user_id, display_name, content)
        parts = transcode_reply(outcome.reply_text)
        delivered = await self.deliver(channel, user_id, parts, bot.settings.delivery_delay)

        fields: dict[str, Any] = {"status": SessionStatus.OPENED, "await_user": True}
        if outcome.conversation_token:
            fields["conversation_token"] = outcome.conversation_token
        await self.store.update(active.id, **fields)

        log.info("turn_completed",
                 session_id=active.id,
                 parts=len(parts),
                 delivered=delivered,
                 conversation_token=fields.get("conversation_token", active.conversation_token))

    # ══════════════════════════════════════════════════════════
    #  DISPATCH
    # ══════════════════════════════════════════════════════════

    async def dispatch(
        self,
        channel: MessagingChannel,
        session: BotSession,
        bot: BotConfig,
        user_id: str,
        display_name: str,
        content: str,
    ) -> DispatchOutcome:
        """Call the backend for ``bot.mode`` with presence indicators around it."""
        adapter = self.adapter_for(bot.mode)
        server = self.server
        if channel.instance_name:
            server = server.model_copy(update={"instance_name": channel.instance_name})

        await self._signal_presence(channel, user_id, PresenceState.COMPOSING, subscribe=True)
        try:
            return await adapter.dispatch(
                self._get_client(), session, bot, user_id, display_name, content, server,
            )
        finally:
            await self._signal_presence(channel, user_id, PresenceState.PAUSED)

    def adapter_for(self, mode: BotMode) -> DispatchAdapter:
        if mode not in self._adapters:
            self._adapters[mode] = create_dispatch_adapter(
                mode,
                timeout=self.dispatch_timeout,
                stream_idle_timeout=self.stream_idle_timeout,
            )
        return self._adapters[mode]

    async def _signal_presence(
        self,
        channel: MessagingChannel,
        user_id: str,
        state: PresenceState,
        subscribe: bool = False,
    ) -> None:
        try:
            if subscribe:
                await channel.subscribe_presence(user_id)
            await channel.set_presence(user_id, state)
        except Exception as e:
            logger.warning("presence_update_failed",
                           user_id=user_id, state=state.value, error=str(e))

    # ══════════════════════════════════════════════════════════
    #  DELIVERY
    # ══════════════════════════════════════════════════════════

    async def deliver(
        self,
        channel: MessagingChannel,
        user_id: str,
        parts: list[MessagePart],
        delay_ms: int,
    ) -> int:
        """Send parts in order. A failed part is logged and skipped. Returns parts sent."""
        sent = 0
        for index, part in enumerate(parts):
            try:
                if isinstance(part, MediaPart):
                    await channel.send_media(user_id, part.media_url, part.caption, delay_ms)
                else:
                    await channel.send_text(user_id, part.text, delay_ms)
                sent += 1
            except Exception as e:
                logger.warning("part_delivery_failed",
                               user_id=user_id, index=index, kind=part.kind, error=str(e))
        return sent

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.dispatch_timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
