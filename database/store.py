"""
SqlStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every method opens its own transactional session; returned objects are
pydantic models detached from the ORM.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, and_

from database.models import (
    ChatbotRow, ConversationRow, MaterialRow, MessageRow, TeamMemberRow, WorkspaceRow,
)
from database.session import get_session
from database.store_base import ConversationStore
from models.schemas import (
    Chatbot, Conversation, ConversationStatus, Message, ResponseMaterial,
    TeamMember, Workspace,
)

logger = structlog.get_logger()

_CONVERSATION_FIELDS = {
    "contact_name", "status", "chatbot_id", "current_node",
    "chatbot_timeout", "handoff", "created_at", "updated_at", "phone",
}


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SqlStore(ConversationStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Workspaces ─────────────────────────────────────────

    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        async with get_session() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            return self._row_to_workspace(row) if row else None

    async def find_workspace_by_phone_id(self, phone_id: str) -> Optional[Workspace]:
        if not phone_id:
            return None
        async with get_session() as db:
            stmt = select(WorkspaceRow).where(WorkspaceRow.phone_id == phone_id).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_workspace(row) if row else None

    async def upsert_workspace(self, workspace: Workspace) -> Workspace:
        async with get_session() as db:
            row = await db.get(WorkspaceRow, workspace.id)
            if row is None:
                row = WorkspaceRow(id=workspace.id)
                db.add(row)
            row.name = workspace.name
            row.phone_id = workspace.phone_id
            row.access_token = workspace.access_token
            row.waba_id = workspace.waba_id
            return workspace

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def find_conversation(self, phone: str, workspace_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = (
                select(ConversationRow)
                .where(and_(
                    ConversationRow.workspace_id == workspace_id,
                    ConversationRow.phone == phone,
                ))
                .order_by(ConversationRow.updated_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def create_conversation(self, phone: str, workspace_id: str, **kwargs) -> Conversation:
        conv = Conversation(phone=phone, workspace_id=workspace_id, **kwargs)
        async with get_session() as db:
            db.add(ConversationRow(
                id=conv.id,
                workspace_id=workspace_id,
                phone=phone,
                contact_name=conv.contact_name,
                status=conv.status.value,
                chatbot_id=conv.chatbot_id,
                current_node=conv.current_node,
                chatbot_timeout=conv.chatbot_timeout,
                handoff=conv.handoff,
                created_at=conv.created_at,
                updated_at=conv.updated_at,
            ))
        return conv

    async def update_conversation(self, conversation_id: str, **kwargs) -> Optional[Conversation]:
        unknown = set(kwargs) - _CONVERSATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        kwargs.setdefault("updated_at", datetime.now(timezone.utc))
        if isinstance(kwargs.get("status"), ConversationStatus):
            kwargs["status"] = kwargs["status"].value
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            if row is None:
                return None
            for k, v in kwargs.items():
                setattr(row, k, v)
            await db.flush()
            return self._row_to_conversation(row)

    # ── Messages ───────────────────────────────────────────

    async def create_message(self, message: Message) -> Message:
        async with get_session() as db:
            db.add(MessageRow(**message.model_dump()))
        return message

    async def find_recent_messages(
        self, conversation_id: str, limit: int = 20, newest_first: bool = True,
    ) -> list[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars().all())
            if not newest_first:
                rows.reverse()
            return [self._row_to_message(r) for r in rows]

    async def update_message_status(self, message_id: str, status: str) -> bool:
        if not message_id:
            return False
        async with get_session() as db:
            stmt = select(MessageRow).where(MessageRow.message_id == message_id)
            result = await db.execute(stmt)
            rows = result.scalars().all()
            for row in rows:
                row.status = status
            return bool(rows)

    # ── Chatbots ───────────────────────────────────────────

    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        async with get_session() as db:
            row = await db.get(ChatbotRow, chatbot_id)
            return self._row_to_chatbot(row) if row else None

    async def list_chatbots(self, workspace_id: str, published_only: bool = True) -> list[Chatbot]:
        async with get_session() as db:
            stmt = select(ChatbotRow).where(ChatbotRow.workspace_id == workspace_id)
            if published_only:
                stmt = stmt.where(ChatbotRow.publish.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_chatbot(r) for r in result.scalars().all()]

    async def upsert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        async with get_session() as db:
            row = await db.get(ChatbotRow, chatbot.id)
            if row is None:
                row = ChatbotRow(id=chatbot.id, workspace_id=chatbot.workspace_id)
                db.add(row)
            row.workspace_id = chatbot.workspace_id
            row.name = chatbot.name
            row.trigger = chatbot.trigger
            row.bot = chatbot.bot
            row.publish = chatbot.publish
            row.default = chatbot.default
            return chatbot

    # ── Response materials ─────────────────────────────────

    async def get_material(self, workspace_id: str, material_id: str) -> Optional[ResponseMaterial]:
        async with get_session() as db:
            row = await db.get(MaterialRow, material_id)
            if row is None or row.workspace_id != workspace_id:
                return None
            return self._row_to_material(row)

    async def list_materials(self, workspace_id: str) -> list[ResponseMaterial]:
        async with get_session() as db:
            stmt = select(MaterialRow).where(MaterialRow.workspace_id == workspace_id)
            result = await db.execute(stmt)
            return [self._row_to_material(r) for r in result.scalars().all()]

    async def upsert_material(self, material: ResponseMaterial) -> ResponseMaterial:
        async with get_session() as db:
            row = await db.get(MaterialRow, material.id)
            if row is None:
                db.add(MaterialRow(**material.model_dump()))
            else:
                row.name = material.name
                row.content = material.content
                row.type = material.type
            return material

    # ── Team ───────────────────────────────────────────────

    async def list_team_members(self, workspace_id: str) -> list[TeamMember]:
        async with get_session() as db:
            stmt = select(TeamMemberRow).where(TeamMemberRow.workspace_id == workspace_id)
            result = await db.execute(stmt)
            return [
                TeamMember(id=r.id, workspace_id=r.workspace_id, name=r.name, available=r.available)
                for r in result.scalars().all()
            ]

    async def upsert_team_member(self, member: TeamMember) -> TeamMember:
        async with get_session() as db:
            row = await db.get(TeamMemberRow, member.id)
            if row is None:
                db.add(TeamMemberRow(**member.model_dump()))
            else:
                row.name = member.name
                row.available = member.available
            return member

    # ── Automation settings ────────────────────────────────

    async def get_automation_settings(self, workspace_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            if row is None or row.automation_settings is None:
                return None
            return dict(row.automation_settings)

    async def save_automation_settings(self, workspace_id: str, data: dict[str, Any]) -> None:
        async with get_session() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            if row is None:
                row = WorkspaceRow(id=workspace_id)
                db.add(row)
            row.automation_settings = data
        logger.info("automation_settings_saved", workspace_id=workspace_id)

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_workspace(row: WorkspaceRow) -> Workspace:
        return Workspace(
            id=row.id, name=row.name or "", phone_id=row.phone_id or "",
            access_token=row.access_token or "", waba_id=row.waba_id or "",
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, workspace_id=row.workspace_id, phone=row.phone,
            contact_name=row.contact_name or "",
            status=ConversationStatus(row.status),
            chatbot_id=row.chatbot_id, current_node=row.current_node,
            chatbot_timeout=_aware(row.chatbot_timeout),
            handoff=bool(row.handoff),
            created_at=_aware(row.created_at), updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id, conversation_id=row.conversation_id,
            workspace_id=row.workspace_id, phone=row.phone, type=row.type,
            message=row.message, link=row.link, file_type=row.file_type,
            from_customer=row.from_customer, is_bot=row.is_bot,
            message_id=row.message_id, status=row.status,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_chatbot(row: ChatbotRow) -> Chatbot:
        return Chatbot(
            id=row.id, workspace_id=row.workspace_id, name=row.name or "",
            trigger=row.trigger or "", bot=row.bot,
            publish=bool(row.publish), default=bool(row.default),
        )

    @staticmethod
    def _row_to_material(row: MaterialRow) -> ResponseMaterial:
        return ResponseMaterial(
            id=row.id, workspace_id=row.workspace_id, name=row.name,
            content=row.content or "", type=row.type or "text",
        )
