"""
Abstract Session Store — Interface for all storage backends.

Implementations:
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON file on disk, single-process, durable)

Only one session may exist per (bot_id, user_id) pair. Callers always
re-resolve a session by that pair instead of holding on to a record.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import BotSession


class SessionStoreError(Exception):
    """Raised when a store backend cannot complete an operation."""


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    @abstractmethod
    async def create(self, bot_id: str, user_id: str) -> BotSession:
        """Create an opened session whose conversation token is the user id."""
        ...

    @abstractmethod
    async def get(self, bot_id: str, user_id: str) -> Optional[BotSession]:
        ...

    @abstractmethod
    async def update(self, session_id: str, **fields: Any) -> None:
        """Apply field changes and touch updated_at."""
        ...

    @abstractmethod
    async def delete_all(self, bot_id: str, user_id: str) -> int:
        """Delete every session for the pair. Returns the number removed."""
        ...

    async def open(self) -> None:
        """Prepare backing resources (tables, files). Called once at startup."""

    async def close(self) -> None:
        pass
