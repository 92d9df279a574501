"""
Pick the session store backend named by ``database.store_backend``.

    memory   dicts in process memory; lost on restart (default)
    file     memory store mirrored to {store_file_dir}/sessions.json
    sql      SqlSessionStore on ``database.url``

The store is a process singleton so the API and the orchestrator share it.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseSessionStore

logger = structlog.get_logger()

STORE_BACKENDS = ("memory", "file", "sql")

_instance: Optional[BaseSessionStore] = None


def create_store(config: Optional[DatabaseConfig] = None) -> BaseSessionStore:
    """Build the configured store once; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or DatabaseConfig()
    backend = config.store_backend
    if backend not in STORE_BACKENDS:
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")
        backend = "memory"

    if backend == "sql":
        from database.store import SqlSessionStore
        _instance = SqlSessionStore(db_url=config.url)
    elif backend == "file":
        from database.store_file import FileSessionStore
        _instance = FileSessionStore(data_dir=config.store_file_dir)
    else:
        from database.store_memory import InMemorySessionStore
        _instance = InMemorySessionStore()

    logger.info("store_created", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseSessionStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
