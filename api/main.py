"""
FastAPI Application — inbound turns and session administration.

Provides:
- POST /api/v1/bots/{bot_id}/turns           queue an inbound turn (202)
- GET  /api/v1/bots/{bot_id}/sessions/{uid}  inspect a session
- POST /api/v1/bots/{bot_id}/sessions/{uid}/reopen   reopen a closed session
- DELETE /api/v1/bots/{bot_id}/sessions/{uid}        drop a session
- GET  /health
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from channels import create_channel
from config.logging_config import configure_logging
from config.settings import get_settings
from core.orchestrator import Orchestrator
from database.store_factory import create_store
from models.schemas import BotConfig, InboundTurn, SessionStatus

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
configure_logging(settings.debug)

session_store = create_store(settings.database)
channel = create_channel(settings.channel)
orchestrator = Orchestrator(
    store=session_store,
    server=settings.server_context(),
    dispatch_timeout=settings.dispatch.timeout,
    stream_idle_timeout=settings.dispatch.stream_idle_timeout,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await session_store.open()

    logger.info("chatrelay_started",
                bots=[b.id for b in settings.bots],
                store=type(session_store).__name__,
                channel=channel.name)
    yield

    await orchestrator.close()
    await channel.shutdown()
    await session_store.close()
    logger.info("chatrelay_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ChatRelay API",
    description="Relay messaging-channel turns to conversational AI bots",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_bot(bot_id: str) -> BotConfig:
    bot = settings.get_bot(bot_id)
    if bot is None or not bot.enabled:
        raise HTTPException(status_code=404, detail=f"Bot {bot_id} not found")
    return bot


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "bots": [{"id": b.id, "mode": b.mode.value, "enabled": b.enabled} for b in settings.bots],
        "active_turns": len(orchestrator.locks),
    }


# ══════════════════════════════════════════════════════════════
#  INBOUND TURNS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/bots/{bot_id}/turns", status_code=202)
async def receive_turn(bot_id: str, turn: InboundTurn, background_tasks: BackgroundTasks):
    bot = _require_bot(bot_id)
    background_tasks.add_task(
        orchestrator.handle_turn,
        channel, turn.user_id, bot, turn.content, turn.display_name,
    )
    return {"status": "accepted", "bot_id": bot_id, "user_id": turn.user_id}


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/bots/{bot_id}/sessions/{user_id}")
async def get_session(bot_id: str, user_id: str):
    _require_bot(bot_id)
    session = await session_store.get(bot_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.model_dump(mode="json")


@app.post("/api/v1/bots/{bot_id}/sessions/{user_id}/reopen")
async def reopen_session(bot_id: str, user_id: str):
    _require_bot(bot_id)
    async with orchestrator.locks.hold(bot_id, user_id):
        session = await session_store.get(bot_id, user_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        await session_store.update(session.id, status=SessionStatus.OPENED, await_user=False)
    logger.info("session_reopened", bot_id=bot_id, user_id=user_id)
    return {"status": "opened", "session_id": session.id}


@app.delete("/api/v1/bots/{bot_id}/sessions/{user_id}")
async def delete_session(bot_id: str, user_id: str):
    _require_bot(bot_id)
    async with orchestrator.locks.hold(bot_id, user_id):
        removed = await session_store.delete_all(bot_id, user_id)
    return {"deleted": removed}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
