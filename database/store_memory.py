"""
InMemoryStore: Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlStore
  - Safe under asyncio (single event loop, no awaits while mutating)
  - All data lost on process restart
"""
from __future__ import annotations

import copy
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import ConversationStore
from models.schemas import (
    Chatbot, Conversation, Message, ResponseMaterial, TeamMember, Workspace,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore(ConversationStore):
    """
    Keeps copies of every model so callers can never mutate stored state
    by holding on to a returned object.
    """

    def __init__(self):
        self._workspaces: dict[str, Workspace] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = defaultdict(list)   # conv_id → messages
        self._chatbots: dict[str, Chatbot] = {}
        self._materials: dict[str, ResponseMaterial] = {}
        self._team: dict[str, TeamMember] = {}
        self._settings: dict[str, dict[str, Any]] = {}

        # Indexes
        self._phone_index: dict[str, str] = {}             # "workspace:phone" → conv_id
        self._provider_msg_index: dict[str, Message] = {}  # wamid → message
        logger.info("inmemory_store_initialized")

    # ── Workspaces ────────────────────────────────────────

    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        ws = self._workspaces.get(workspace_id)
        return ws.model_copy() if ws else None

    async def find_workspace_by_phone_id(self, phone_id: str) -> Optional[Workspace]:
        for ws in self._workspaces.values():
            if ws.phone_id and ws.phone_id == phone_id:
                return ws.model_copy()
        return None

    async def upsert_workspace(self, workspace: Workspace) -> Workspace:
        self._workspaces[workspace.id] = workspace.model_copy()
        return workspace

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy() if conv else None

    async def find_conversation(self, phone: str, workspace_id: str) -> Optional[Conversation]:
        conv_id = self._phone_index.get(f"{workspace_id}:{phone}")
        if not conv_id:
            return None
        return await self.get_conversation(conv_id)

    async def create_conversation(self, phone: str, workspace_id: str, **kwargs) -> Conversation:
        conv = Conversation(phone=phone, workspace_id=workspace_id, **kwargs)
        self._conversations[conv.id] = conv
        self._phone_index[f"{workspace_id}:{phone}"] = conv.id
        logger.debug("conversation_created", conversation_id=conv.id, workspace_id=workspace_id)
        return conv.model_copy()

    async def update_conversation(self, conversation_id: str, **kwargs) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        kwargs.setdefault("updated_at", _utcnow())
        updated = conv.model_copy(update=kwargs)
        self._conversations[conversation_id] = updated
        return updated.model_copy()

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, message: Message) -> Message:
        stored = message.model_copy()
        self._messages[message.conversation_id].append(stored)
        if stored.message_id:
            self._provider_msg_index[stored.message_id] = stored
        return message

    async def find_recent_messages(
        self, conversation_id: str, limit: int = 20, newest_first: bool = True,
    ) -> list[Message]:
        msgs = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
        if newest_first:
            msgs = list(reversed(msgs))
            return [m.model_copy() for m in msgs[:limit]]
        return [m.model_copy() for m in msgs[-limit:]]

    async def update_message_status(self, message_id: str, status: str) -> bool:
        msg = self._provider_msg_index.get(message_id)
        if msg is None:
            return False
        msg.status = status
        return True

    # ── Chatbots ──────────────────────────────────────────

    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        bot = self._chatbots.get(chatbot_id)
        return bot.model_copy(deep=True) if bot else None

    async def list_chatbots(self, workspace_id: str, published_only: bool = True) -> list[Chatbot]:
        return [
            b.model_copy(deep=True) for b in self._chatbots.values()
            if b.workspace_id == workspace_id and (b.publish or not published_only)
        ]

    async def upsert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        self._chatbots[chatbot.id] = chatbot.model_copy(deep=True)
        return chatbot

    # ── Response materials ────────────────────────────────

    async def get_material(self, workspace_id: str, material_id: str) -> Optional[ResponseMaterial]:
        mat = self._materials.get(material_id)
        if mat is None or mat.workspace_id != workspace_id:
            return None
        return mat.model_copy()

    async def list_materials(self, workspace_id: str) -> list[ResponseMaterial]:
        return [m.model_copy() for m in self._materials.values() if m.workspace_id == workspace_id]

    async def upsert_material(self, material: ResponseMaterial) -> ResponseMaterial:
        self._materials[material.id] = material.model_copy()
        return material

    # ── Team ──────────────────────────────────────────────

    async def list_team_members(self, workspace_id: str) -> list[TeamMember]:
        return [m.model_copy() for m in self._team.values() if m.workspace_id == workspace_id]

    async def upsert_team_member(self, member: TeamMember) -> TeamMember:
        self._team[member.id] = member.model_copy()
        return member

    # ── Automation settings ───────────────────────────────

    async def get_automation_settings(self, workspace_id: str) -> Optional[dict[str, Any]]:
        data = self._settings.get(workspace_id)
        return copy.deepcopy(data) if data is not None else None

    async def save_automation_settings(self, workspace_id: str, data: dict[str, Any]) -> None:
        self._settings[workspace_id] = copy.deepcopy(data)

    # ── Stats ─────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "workspaces": len(self._workspaces),
            "conversations": len(self._conversations),
            "messages": sum(len(v) for v in self._messages.values()),
            "chatbots": len(self._chatbots),
        }
