"""
Inbound Processor: The coordinator for every inbound WhatsApp message.

Flow:
  webhook message → normalise phone → conversation (find or create)
      → persist inbound → chatbot flow interpreter
      → (not handled) settings → working hours → rule resolver
      → response dispatcher → (chatbot rule) start that flow

Messages for the same customer in the same workspace are processed one at
a time so a fast double-tap cannot advance a flow twice or send two
automated replies for one turn.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from channels.base import ConfigurationError, OutboundGateway
from config.settings import AutomationConfig, get_settings
from context.flow_interpreter import FlowInterpreter
from core.dispatcher import ResponseDispatcher
from database.store_base import ConversationStore
from models.schemas import (
    Conversation, DispatchStatus, FlowResult, InboundMessage, Message,
    ProcessingResult, StatusUpdate, Workspace,
)
from rules.engine import RuleResolver
from rules.settings_service import AutomationSettingsService
from rules.working_hours import is_working_hours
from utils.phone import normalize_phone

logger = structlog.get_logger()


class InboundProcessor:
    """
    Routes inbound messages to the chatbot interpreter or the automation
    rules, never both for the same message.
    """

    def __init__(
        self,
        store: ConversationStore,
        gateway: OutboundGateway,
        interpreter: FlowInterpreter,
        dispatcher: ResponseDispatcher,
        resolver: Optional[RuleResolver] = None,
        settings_service: Optional[AutomationSettingsService] = None,
        config: Optional[AutomationConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.interpreter = interpreter
        self.dispatcher = dispatcher
        self.config = config or get_settings().automation
        self.resolver = resolver or RuleResolver(store, self.config.welcome_window_minutes)
        self.settings_service = settings_service or AutomationSettingsService(store)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _serialised(self, workspace_id: str, phone: str) -> AsyncIterator[None]:
        """One handler at a time per conversation; the lock is dropped with its last user."""
        key = f"{workspace_id}:{phone}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # ══════════════════════════════════════════════════════════
    #  INBOUND: Message received from a customer
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(
        self,
        inbound: InboundMessage,
        workspace: Workspace,
        now: Optional[datetime] = None,
    ) -> ProcessingResult:
        phone = normalize_phone(inbound.phone, self.config.default_country_code)
        if not phone:
            logger.warning("inbound_phone_invalid", workspace_id=workspace.id)
            return ProcessingResult(route="none", error="invalid phone number")

        async with self._serialised(workspace.id, phone):
            return await self._process(inbound, workspace, phone,
                                       now or datetime.now(timezone.utc))

    async def _process(self, inbound: InboundMessage, workspace: Workspace,
                       phone: str, now: datetime) -> ProcessingResult:
        logger.info("inbound_message", workspace_id=workspace.id, phone=phone,
                    type=inbound.type, message_id=inbound.message_id)

        # Snapshot before this message touches it; idle thresholds measure
        # the gap since the previous activity.
        snapshot = await self.store.find_conversation(phone, workspace.id)
        if snapshot is None:
            snapshot = await self.store.create_conversation(
                phone, workspace.id, contact_name=inbound.contact_name,
            )
            logger.info("conversation_created", conversation_id=snapshot.id,
                        workspace_id=workspace.id)

        await self._record_inbound(inbound, snapshot, workspace, phone)
        touch = {"contact_name": inbound.contact_name} if inbound.contact_name else {}
        conversation = await self.store.update_conversation(snapshot.id, **touch) or snapshot

        result = ProcessingResult(conversation_id=conversation.id, route="none")
        try:
            flow = await self.interpreter.handle(conversation, workspace, inbound, now)
            if flow.handled:
                result.route = "chatbot"
                result.flow = flow
                return result

            if flow.chatbot_id:
                # expired or unmatched replies reload the state the interpreter left
                conversation = await self.store.get_conversation(conversation.id) or conversation
            await self._automate(result, snapshot, conversation, workspace, now)
        except ConfigurationError as e:
            logger.error("workspace_not_configured", workspace_id=workspace.id,
                         conversation_id=conversation.id, error=str(e))
            result.error = str(e)
        return result

    async def _automate(self, result: ProcessingResult, snapshot: Conversation,
                        conversation: Conversation, workspace: Workspace, now: datetime):
        settings = await self.settings_service.get_or_create(workspace.id)
        working = is_working_hours(settings, now, self.config.timezone)

        rule = await self.resolver.resolve(settings, snapshot, working, now)
        if rule is None:
            return

        result.route = "automation"
        result.rule_id = rule.id
        outcome = await self.dispatcher.dispatch(rule, conversation.phone, conversation, workspace)
        result.dispatch = outcome
        if outcome.status != DispatchStatus.CHATBOT:
            return

        chatbot = await self.store.get_chatbot(outcome.chatbot_id) if outcome.chatbot_id else None
        if chatbot is None or chatbot.workspace_id != workspace.id:
            logger.warning("automation_chatbot_missing", rule_id=rule.id,
                           chatbot_id=outcome.chatbot_id, workspace_id=workspace.id)
            return

        result.route = "chatbot"
        result.flow = await self.interpreter.start(conversation, workspace, chatbot, now)

    async def _record_inbound(self, inbound: InboundMessage, conversation: Conversation,
                              workspace: Workspace, phone: str) -> Message:
        body = inbound.text
        if inbound.interactive is not None:
            body = inbound.interactive.title or inbound.interactive.id
        return await self.store.create_message(Message(
            conversation_id=conversation.id,
            workspace_id=workspace.id,
            phone=phone,
            type=inbound.type,
            message=body,
            link=inbound.link,
            from_customer=True,
            message_id=inbound.message_id,
            status="received",
        ))

    # ══════════════════════════════════════════════════════════
    #  STATUS: Delivery receipts
    # ══════════════════════════════════════════════════════════

    async def handle_status(self, update: StatusUpdate) -> bool:
        updated = await self.store.update_message_status(update.message_id, update.status)
        if updated:
            logger.debug("message_status_updated", message_id=update.message_id,
                         status=update.status)
        else:
            logger.debug("message_status_unknown", message_id=update.message_id,
                         status=update.status)
        return updated


def build_processor(
    store: ConversationStore,
    gateway: OutboundGateway,
    generator=None,
    api_connector=None,
) -> InboundProcessor:
    """Wire the default processor graph around a store and a gateway."""
    from backend.connector import ApiConnector
    from core.engine import TextGenerator

    settings = get_settings()
    interpreter = FlowInterpreter(store, gateway, api_connector or ApiConnector(),
                                  settings.automation)
    dispatcher = ResponseDispatcher(store, gateway, generator or TextGenerator(settings.ai),
                                    settings.whatsapp.template_language)
    return InboundProcessor(store, gateway, interpreter, dispatcher, config=settings.automation)
