"""
Tests for Orchestrator.handle_turn — full turns against a mocked backend.

Coverage:
  Lifecycle:  new session, continue, expiry, finish keyword, closed, empty content
  Modes:      chat / completion / agent / workflow token handling
  Delivery:   part order, media, delay, presence, best-effort failures
  Failures:   backend errors leave the session untouched
  Locking:    turns for one session run one after another
"""
import asyncio
import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx

from core.orchestrator import Orchestrator
from models.schemas import BotMode, PresenceState, SessionStatus

from conftest import NOW, USER, make_bot, make_session, mock_client, sse


class FakeBackend:
    """Async MockTransport handler; replies are queued or default to a chat answer."""

    def __init__(self, *responses: httpx.Response, delay: float = 0.0):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.delay = delay

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={"answer": "default", "conversation_id": "conv-default"})

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def make_orchestrator(store, backend: FakeBackend, server=None) -> Orchestrator:
    return Orchestrator(
        store=store,
        server=server,
        client=mock_client(backend),
        clock=lambda: NOW,
    )


# ══════════════════════════════════════════════════════════════
#  Lifecycle
# ══════════════════════════════════════════════════════════════

class TestNewConversation:
    @pytest.mark.asyncio
    async def test_absent_session_hello(self, store, channel, server):
        backend = FakeBackend(httpx.Response(200, json={"answer": "Hi there!", "conversation_id": "conv-1"}))
        orch = make_orchestrator(store, backend, server)

        await orch.handle_turn(channel, USER, make_bot(), "hello", "Ana")

        assert len(backend.requests) == 1
        body = backend.body()
        assert "conversation_id" not in body
        assert body["query"] == "hello"
        assert body["inputs"]["pushName"] == "Ana"

        session = await store.get("bot-1", USER)
        assert session.status == SessionStatus.OPENED
        assert session.await_user is True
        assert session.conversation_token == "conv-1"
        assert channel.texts == ["Hi there!"]

    @pytest.mark.asyncio
    async def test_presence_wraps_the_backend_call(self, store, channel):
        orch = make_orchestrator(store, FakeBackend())
        await orch.handle_turn(channel, USER, make_bot(), "hello")
        assert channel.presence == [(USER, PresenceState.COMPOSING), (USER, PresenceState.PAUSED)]
        assert channel.is_subscribed(USER)

    @pytest.mark.asyncio
    async def test_second_turn_continues_conversation(self, store, channel):
        backend = FakeBackend(
            httpx.Response(200, json={"answer": "one", "conversation_id": "conv-1"}),
            httpx.Response(200, json={"answer": "two", "conversation_id": "conv-IGNORED"}),
        )
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(), "first")
        await orch.handle_turn(channel, USER, make_bot(), "second")

        assert backend.body(1)["conversation_id"] == "conv-1"
        assert (await store.get("bot-1", USER)).conversation_token == "conv-1"
        assert channel.texts == ["one", "two"]

    @pytest.mark.asyncio
    async def test_session_hint_is_not_trusted(self, store, channel):
        stale = make_session(conversation_token="conv-stale", id="gone")
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(), "hello", session=stale)
        assert "conversation_id" not in backend.body()


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_session_starts_over(self, store, channel):
        store._put(make_session(conversation_token="conv-old", idle=timedelta(minutes=45)))
        backend = FakeBackend(httpx.Response(200, json={"answer": "fresh", "conversation_id": "conv-new"}))
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(expire=30), "hi")

        assert "conversation_id" not in backend.body()
        session = await store.get("bot-1", USER)
        assert session.id != "s-1"
        assert session.conversation_token == "conv-new"
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_not_expired_at_boundary(self, store, channel):
        store._put(make_session(conversation_token="conv-old", idle=timedelta(minutes=30)))
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(expire=30), "hi")
        assert backend.body()["conversation_id"] == "conv-old"


class TestFinishAndClosed:
    @pytest.mark.asyncio
    async def test_finish_keyword_deletes(self, store, channel):
        store._put(make_session(conversation_token="conv-1"))
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(keyword_finish="#END"), "#end")

        assert backend.requests == []
        assert channel.sent == []
        assert await store.get("bot-1", USER) is None

    @pytest.mark.asyncio
    async def test_finish_keyword_keep_open_closes_then_ignores(self, store, channel):
        store._put(make_session(conversation_token="conv-1"))
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        bot = make_bot(keyword_finish="stop", keep_open=True)

        await orch.handle_turn(channel, USER, bot, "STOP")
        await orch.handle_turn(channel, USER, bot, "are you there?")

        assert backend.requests == []
        assert channel.sent == []
        assert (await store.get("bot-1", USER)).status == SessionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_disabled_bot(self, store, channel):
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        bot = make_bot().model_copy(update={"enabled": False})
        await orch.handle_turn(channel, USER, bot, "hello")
        assert backend.requests == []
        assert await store.get("bot-1", USER) is None


class TestEmptyContent:
    @pytest.mark.asyncio
    async def test_fallback_message(self, store, channel):
        store._put(make_session())
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(unknown_message="Text only, please."), "")
        assert backend.requests == []
        assert channel.texts == ["Text only, please."]

    @pytest.mark.asyncio
    async def test_silent_without_fallback(self, store, channel):
        store._put(make_session())
        backend = FakeBackend()
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(), None)
        assert backend.requests == []
        assert channel.sent == []


# ══════════════════════════════════════════════════════════════
#  Modes
# ══════════════════════════════════════════════════════════════

class TestModes:
    @pytest.mark.asyncio
    async def test_workflow_keeps_token(self, store, channel):
        store._put(make_session())
        backend = FakeBackend(httpx.Response(200, json={"data": {"outputs": {"text": "wf done"}}}))
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(BotMode.WORKFLOW), "go")

        session = await store.get("bot-1", USER)
        assert session.conversation_token == USER
        assert session.await_user is True
        assert channel.texts == ["wf done"]

    @pytest.mark.asyncio
    async def test_agent_stream_reply(self, store, channel):
        backend = FakeBackend(httpx.Response(200, content=sse(
            {"event": "agent_message", "conversation_id": "agent-1", "answer": "Here: "},
            {"event": "agent_message", "conversation_id": "agent-1",
             "answer": "![chart](https://cdn.test/c.png) done"},
        )))
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(BotMode.AGENT, delay_message=250), "plot")

        assert [m["type"] for m in channel.sent] == ["text", "media", "text"]
        assert channel.sent[1]["media"] == "https://cdn.test/c.png"
        assert channel.sent[1]["caption"] == "chart"
        assert {m["delay"] for m in channel.sent} == {250}
        assert (await store.get("bot-1", USER)).conversation_token == "agent-1"

    @pytest.mark.asyncio
    async def test_completion_mode(self, store, channel):
        backend = FakeBackend(httpx.Response(200, json={"answer": "poem", "conversation_id": "cm-1"}))
        orch = make_orchestrator(store, backend)
        await orch.handle_turn(channel, USER, make_bot(BotMode.COMPLETION), "write a poem")
        assert backend.body()["inputs"]["query"] == "write a poem"
        assert (await store.get("bot-1", USER)).conversation_token == "cm-1"


# ══════════════════════════════════════════════════════════════
#  Failures
# ══════════════════════════════════════════════════════════════

class TestFailures:
    @pytest.mark.asyncio
    async def test_backend_error_leaves_session(self, store, channel):
        store._put(make_session(conversation_token="conv-1"))
        backend = FakeBackend(httpx.Response(500, json={"code": "internal_error"}))
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(), "hello")

        session = await store.get("bot-1", USER)
        assert session.conversation_token == "conv-1"
        assert session.await_user is False
        assert channel.sent == []
        assert channel.presence[-1] == (USER, PresenceState.PAUSED)

    @pytest.mark.asyncio
    async def test_stream_failure_leaves_new_session_untouched(self, store, channel):
        async def broken():
            yield sse({"event": "agent_message", "conversation_id": "a-1", "answer": "half"})
            raise httpx.ReadError("reset")

        async def handler(request):
            return httpx.Response(200, content=broken())

        orch = Orchestrator(store=store, client=mock_client(handler), clock=lambda: NOW)
        await orch.handle_turn(channel, USER, make_bot(BotMode.AGENT), "hi")

        session = await store.get("bot-1", USER)
        assert session.conversation_token == USER
        assert session.await_user is False
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_presence_failure_does_not_abort(self, store):
        channel = AsyncMock()
        channel.instance_name = "support"
        channel.set_presence.side_effect = RuntimeError("presence down")
        orch = make_orchestrator(store, FakeBackend())

        await orch.handle_turn(channel, USER, make_bot(), "hello")

        channel.send_text.assert_awaited_once_with(USER, "default", 1000)
        assert (await store.get("bot-1", USER)).await_user is True

    @pytest.mark.asyncio
    async def test_failed_part_does_not_stop_delivery(self, store):
        channel = AsyncMock()
        channel.instance_name = "support"
        channel.send_media.side_effect = RuntimeError("media rejected")
        backend = FakeBackend(httpx.Response(200, json={
            "answer": "a [img](http://h/i.png) b", "conversation_id": "c"}))
        orch = make_orchestrator(store, backend)

        await orch.handle_turn(channel, USER, make_bot(), "hello")

        assert [c.args[1] for c in channel.send_text.await_args_list] == ["a", "b"]
        assert (await store.get("bot-1", USER)).conversation_token == "c"

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, channel):
        store = AsyncMock()
        store.get.side_effect = RuntimeError("db down")
        orch = make_orchestrator(store, FakeBackend())
        await orch.handle_turn(channel, USER, make_bot(), "hello")
        assert channel.sent == []


# ══════════════════════════════════════════════════════════════
#  Locking
# ══════════════════════════════════════════════════════════════

class TestSerialisation:
    @pytest.mark.asyncio
    async def test_same_session_turns_run_in_order(self, store, channel):
        backend = FakeBackend(
            httpx.Response(200, json={"answer": "one", "conversation_id": "conv-1"}),
            httpx.Response(200, json={"answer": "two", "conversation_id": "conv-2"}),
            delay=0.05,
        )
        orch = make_orchestrator(store, backend)
        bot = make_bot()

        await asyncio.gather(
            orch.handle_turn(channel, USER, bot, "first"),
            orch.handle_turn(channel, USER, bot, "second"),
        )

        assert "conversation_id" not in backend.body(0)
        assert backend.body(1)["conversation_id"] == "conv-1"
        assert store.count() == 1
        assert len(orch.locks) == 0

    @pytest.mark.asyncio
    async def test_different_users_run_in_parallel(self, store, channel):
        backend = FakeBackend(delay=0.2)
        orch = make_orchestrator(store, backend)
        bot = make_bot()
        users = [f"55119{i:08d}@s.whatsapp.net" for i in range(5)]

        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.gather(*(orch.handle_turn(channel, u, bot, "hi") for u in users))

        assert loop.time() - started < 0.2 * len(users)
        assert len(backend.requests) == 5

    @pytest.mark.asyncio
    async def test_lock_held_only_during_turn(self, store, channel):
        seen = []

        async def handler(request):
            seen.append(orch.locks.is_locked("bot-1", USER))
            return httpx.Response(200, json={"answer": "ok", "conversation_id": "c"})

        orch = Orchestrator(store=store, client=mock_client(handler), clock=lambda: NOW)
        await orch.handle_turn(channel, USER, make_bot(), "hi")

        assert seen == [True]
        assert not orch.locks.is_locked("bot-1", USER)
