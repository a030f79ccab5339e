"""
Database layer: Conversation state gateway.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  conv = await store.find_conversation("+2348012345678", "ws-1")
"""
from database.models import (
    Base, WorkspaceRow, ConversationRow, MessageRow,
    ChatbotRow, MaterialRow, TeamMemberRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import ConversationStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "WorkspaceRow", "ConversationRow", "MessageRow",
    "ChatbotRow", "MaterialRow", "TeamMemberRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "ConversationStore",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
