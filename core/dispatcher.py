"""
Response Dispatcher: Executes a resolved automation rule.

  text      → rule prompt, or the linked response material
  ai        → generated text; the prompt itself if generation or sending fails
  template  → provider template; the prompt as text if the template fails
  chatbot   → no send, the caller starts the rule's chatbot flow

At most one message is sent per dispatch and every successful send is
recorded as a bot message on the conversation. Provider failures never
leave this module; a workspace without credentials raises
ConfigurationError before anything is attempted.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import OutboundGateway, ProviderError, SendReceipt
from config.settings import get_settings
from core.engine import GenerationError, TextGenerator
from database.store_base import ConversationStore
from models.schemas import (
    AutomationRule, Conversation, DispatchOutcome, DispatchStatus, Message,
    ResponseType, Workspace,
)

logger = structlog.get_logger()


class ResponseDispatcher:

    def __init__(
        self,
        store: ConversationStore,
        gateway: OutboundGateway,
        generator: TextGenerator,
        template_language: Optional[str] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.generator = generator
        self.template_language = template_language or get_settings().whatsapp.template_language

    async def dispatch(
        self,
        rule: AutomationRule,
        phone: str,
        conversation: Conversation,
        workspace: Workspace,
    ) -> DispatchOutcome:
        if rule.response_type == ResponseType.CHATBOT:
            logger.info("automation_chatbot_handoff", rule_id=rule.id,
                        chatbot_id=rule.chatbot_flow, conversation_id=conversation.id)
            return DispatchOutcome(
                status=DispatchStatus.CHATBOT, rule_id=rule.id,
                response_type=rule.response_type, chatbot_id=rule.chatbot_flow,
            )

        self.gateway.ensure_credentials(workspace)

        if rule.response_type == ResponseType.AI:
            return await self._dispatch_ai(rule, phone, conversation, workspace)
        if rule.response_type == ResponseType.TEMPLATE:
            return await self._dispatch_template(rule, phone, conversation, workspace)
        return await self._dispatch_text(rule, phone, conversation, workspace)

    # ── Response types ────────────────────────────────────────

    async def _dispatch_text(self, rule, phone, conversation, workspace) -> DispatchOutcome:
        body = rule.ai_prompt.strip()
        if not body and rule.material_id:
            body = await self._material_content(workspace.id, rule.material_id)
        if not body:
            logger.info("automation_text_empty", rule_id=rule.id, conversation_id=conversation.id)
            return self._nothing(rule, "no text content")
        return await self._send_text(rule, phone, conversation, workspace, body, DispatchStatus.SENT)

    async def _dispatch_ai(self, rule, phone, conversation, workspace) -> DispatchOutcome:
        prompt = rule.ai_prompt.strip()
        if not prompt:
            return self._nothing(rule, "no AI prompt")

        try:
            generated = await self.generator.generate(prompt)
        except GenerationError as e:
            logger.warning("automation_ai_fallback", rule_id=rule.id, reason="generation", error=str(e))
            return await self._send_text(rule, phone, conversation, workspace, prompt,
                                         DispatchStatus.FALLBACK_SENT, error=str(e))

        try:
            receipt = await self.gateway.send_text(workspace, phone, generated)
        except ProviderError as e:
            logger.warning("automation_ai_fallback", rule_id=rule.id, reason="send", error=str(e))
            return await self._send_text(rule, phone, conversation, workspace, prompt,
                                         DispatchStatus.FALLBACK_SENT, error=str(e))

        await self._record(conversation, workspace, phone, generated, receipt)
        return DispatchOutcome(
            status=DispatchStatus.SENT, rule_id=rule.id, response_type=rule.response_type,
            content=generated, message_ids=[receipt.message_id],
        )

    async def _dispatch_template(self, rule, phone, conversation, workspace) -> DispatchOutcome:
        fallback = rule.ai_prompt.strip()
        name = rule.template_name.strip()
        if not name:
            if fallback:
                return await self._send_text(rule, phone, conversation, workspace, fallback,
                                             DispatchStatus.FALLBACK_SENT, error="no template name")
            return self._nothing(rule, "no template name")

        try:
            receipt = await self.gateway.send_template(workspace, phone, name, self.template_language)
        except ProviderError as e:
            logger.warning("automation_template_failed", rule_id=rule.id,
                           template=name, error=str(e), has_fallback=bool(fallback))
            if not fallback:
                return self._nothing(rule, str(e))
            return await self._send_text(rule, phone, conversation, workspace, fallback,
                                         DispatchStatus.FALLBACK_SENT, error=str(e))

        await self._record(conversation, workspace, phone, f"Template: {name}", receipt,
                           msg_type="template")
        return DispatchOutcome(
            status=DispatchStatus.SENT, rule_id=rule.id, response_type=rule.response_type,
            content=name, message_ids=[receipt.message_id],
        )

    # ── Helpers ───────────────────────────────────────────────

    async def _material_content(self, workspace_id: str, material_id: str) -> str:
        try:
            material = await self.store.get_material(workspace_id, material_id)
        except Exception as e:
            logger.warning("material_lookup_failed", material_id=material_id, error=str(e))
            return ""
        return material.content.strip() if material else ""

    async def _send_text(self, rule, phone, conversation, workspace, body: str,
                         status: DispatchStatus, error: str = "") -> DispatchOutcome:
        try:
            receipt = await self.gateway.send_text(workspace, phone, body)
        except ProviderError as e:
            logger.error("automation_send_failed", rule_id=rule.id,
                         conversation_id=conversation.id, error=str(e))
            return self._nothing(rule, str(e))

        await self._record(conversation, workspace, phone, body, receipt)
        logger.info("automation_reply_sent", rule_id=rule.id, status=status.value,
                    conversation_id=conversation.id)
        return DispatchOutcome(
            status=status, rule_id=rule.id, response_type=rule.response_type,
            content=body, message_ids=[receipt.message_id], error=error,
        )

    async def _record(self, conversation: Conversation, workspace: Workspace, phone: str,
                      body: str, receipt: SendReceipt, msg_type: str = "text") -> Message:
        return await self.store.create_message(Message(
            conversation_id=conversation.id,
            workspace_id=workspace.id,
            phone=phone,
            type=msg_type,
            message=body,
            from_customer=False,
            is_bot=True,
            message_id=receipt.message_id,
        ))

    @staticmethod
    def _nothing(rule: AutomationRule, error: str) -> DispatchOutcome:
        return DispatchOutcome(
            status=DispatchStatus.NOTHING_SENT, rule_id=rule.id,
            response_type=rule.response_type, error=error,
        )
