"""
FileSessionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json      {session_id: session dict}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Flushes on every mutation, via write-to-temp then rename
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any

from database.store_memory import InMemorySessionStore
from models.schemas import BotSession

logger = structlog.get_logger()


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads sessions from disk into memory.
    On every write: flushes the whole collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    sessions=self.count())

    @property
    def path(self) -> Path:
        return self._data_dir / "sessions.json"

    # ── Load / Save ───────────────────────────────────────

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return

        for raw in (data or {}).values():
            try:
                self._put(BotSession.model_validate(raw))
            except ValueError as e:
                logger.warning("file_store_bad_record", record=raw, error=str(e))

    def _flush(self):
        data = {sid: s.model_dump(mode="json") for sid, s in self._sessions.items()}
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.rename(self.path)  # atomic on POSIX

    # ── Override write methods to trigger persistence ──────

    async def create(self, bot_id: str, user_id: str) -> BotSession:
        session = await super().create(bot_id, user_id)
        self._flush()
        return session

    async def update(self, session_id: str, **fields: Any) -> None:
        await super().update(session_id, **fields)
        self._flush()

    async def delete_all(self, bot_id: str, user_id: str) -> int:
        removed = await super().delete_all(bot_id, user_id)
        if removed:
            self._flush()
        return removed
