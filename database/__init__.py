"""
Database layer — Session persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from config.settings import DatabaseConfig
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  session = await store.get("bot-1", "5511999999999@s.whatsapp.net")
"""
from database.models import Base, IntegrationSessionRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseSessionStore, SessionStoreError
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "IntegrationSessionRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseSessionStore", "SessionStoreError",
    # Store backends
    "SqlSessionStore", "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
