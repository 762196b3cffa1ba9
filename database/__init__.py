"""
Database layer — Multi-backend persistence for sessions and drips.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.load_session("s1")
"""
from database.models import Base, SessionRow, DripRow
from database.session import get_engine, get_session, init_db, close_db, make_session_scope
from database.store_base import BaseEngineStore
from database.store import SqlEngineStore
from database.store_memory import InMemoryEngineStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "SessionRow", "DripRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "make_session_scope",
    # Store interface
    "BaseEngineStore",
    # Store backends
    "SqlEngineStore", "InMemoryEngineStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
