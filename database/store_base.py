"""
Abstract Conversation Store: Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

All methods return pydantic models from models.schemas, never ORM rows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    Chatbot, Conversation, Message, ResponseMaterial, TeamMember, Workspace,
)


class ConversationStore(ABC):
    """Interface that all store backends must implement."""

    # ── Workspaces ────────────────────────────────────────────

    @abstractmethod
    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        ...

    @abstractmethod
    async def find_workspace_by_phone_id(self, phone_id: str) -> Optional[Workspace]:
        ...

    @abstractmethod
    async def upsert_workspace(self, workspace: Workspace) -> Workspace:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_conversation(self, phone: str, workspace_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create_conversation(self, phone: str, workspace_id: str, **kwargs) -> Conversation:
        ...

    @abstractmethod
    async def update_conversation(self, conversation_id: str, **kwargs) -> Optional[Conversation]:
        """Apply field updates; ``updated_at`` is bumped unless supplied."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def find_recent_messages(
        self, conversation_id: str, limit: int = 20, newest_first: bool = True,
    ) -> list[Message]:
        ...

    @abstractmethod
    async def update_message_status(self, message_id: str, status: str) -> bool:
        """Update by provider message id. Returns False when unknown."""
        ...

    # ── Chatbots ──────────────────────────────────────────────

    @abstractmethod
    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        ...

    @abstractmethod
    async def list_chatbots(self, workspace_id: str, published_only: bool = True) -> list[Chatbot]:
        ...

    @abstractmethod
    async def upsert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        ...

    # ── Response materials ────────────────────────────────────

    @abstractmethod
    async def get_material(self, workspace_id: str, material_id: str) -> Optional[ResponseMaterial]:
        ...

    @abstractmethod
    async def list_materials(self, workspace_id: str) -> list[ResponseMaterial]:
        ...

    @abstractmethod
    async def upsert_material(self, material: ResponseMaterial) -> ResponseMaterial:
        ...

    # ── Team ──────────────────────────────────────────────────

    @abstractmethod
    async def list_team_members(self, workspace_id: str) -> list[TeamMember]:
        ...

    @abstractmethod
    async def upsert_team_member(self, member: TeamMember) -> TeamMember:
        ...

    # ── Automation settings ───────────────────────────────────

    @abstractmethod
    async def get_automation_settings(self, workspace_id: str) -> Optional[dict[str, Any]]:
        """Raw settings document as saved, or None."""
        ...

    @abstractmethod
    async def save_automation_settings(self, workspace_id: str, data: dict[str, Any]) -> None:
        ...
