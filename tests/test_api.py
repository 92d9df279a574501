"""Tests for the HTTP surface (FastAPI TestClient, background turns run inline)."""
import pytest

import httpx
from fastapi.testclient import TestClient

import api.main as api_main
from core.orchestrator import Orchestrator
from database.store_memory import InMemorySessionStore
from models.schemas import SessionStatus

from conftest import USER, RecordingChannel, make_bot, mock_client


def backend(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"answer": "Hi from the bot", "conversation_id": "conv-1"})


@pytest.fixture
def app_state(monkeypatch):
    store = InMemorySessionStore()
    channel = RecordingChannel()
    disabled = make_bot().model_copy(update={"id": "bot-off", "enabled": False})
    monkeypatch.setattr(api_main.settings, "bots", [make_bot(), disabled])
    monkeypatch.setattr(api_main, "session_store", store)
    monkeypatch.setattr(api_main, "channel", channel)
    monkeypatch.setattr(api_main, "orchestrator",
                        Orchestrator(store=store, client=mock_client(backend)))
    return store, channel


@pytest.fixture
def client(app_state) -> TestClient:
    return TestClient(api_main.app)


class TestTurns:
    def test_turn_accepted_and_processed(self, client, app_state):
        store, channel = app_state
        resp = client.post("/api/v1/bots/bot-1/turns",
                           json={"user_id": USER, "content": "hello", "display_name": "Ana"})
        assert resp.status_code == 202
        assert resp.json()["status"] == "accepted"
        assert channel.texts == ["Hi from the bot"]

        session = client.get(f"/api/v1/bots/bot-1/sessions/{USER}").json()
        assert session["conversation_token"] == "conv-1"
        assert session["await_user"] is True

    def test_unknown_bot(self, client):
        resp = client.post("/api/v1/bots/nope/turns", json={"user_id": USER, "content": "x"})
        assert resp.status_code == 404

    def test_disabled_bot(self, client):
        resp = client.post("/api/v1/bots/bot-off/turns", json={"user_id": USER, "content": "x"})
        assert resp.status_code == 404


class TestSessions:
    def test_missing_session(self, client):
        assert client.get(f"/api/v1/bots/bot-1/sessions/{USER}").status_code == 404

    @pytest.mark.asyncio
    async def test_reopen_closed_session(self, client, app_state):
        store, _ = app_state
        session = await store.create("bot-1", USER)
        await store.update(session.id, status=SessionStatus.CLOSED)

        resp = client.post(f"/api/v1/bots/bot-1/sessions/{USER}/reopen")

        assert resp.status_code == 200
        assert (await store.get("bot-1", USER)).status == SessionStatus.OPENED

    def test_reopen_missing(self, client):
        assert client.post(f"/api/v1/bots/bot-1/sessions/{USER}/reopen").status_code == 404

    @pytest.mark.asyncio
    async def test_delete(self, client, app_state):
        store, _ = app_state
        await store.create("bot-1", USER)
        resp = client.delete(f"/api/v1/bots/bot-1/sessions/{USER}")
        assert resp.json() == {"deleted": 1}
        assert await store.get("bot-1", USER) is None


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert [b["id"] for b in body["bots"]] == ["bot-1", "bot-off"]
