"""
Chatbot Flow Interpreter: drives a conversation through a chatbot graph.

Flow state lives on the conversation:

    chatbot_id       which chatbot owns the conversation
    current_node     the node waiting for the customer's reply
    chatbot_timeout  absolute expiry of the waiting state

Lifecycle:

    trigger phrase ──► start: walk from "start", emit, wait / finish
    reply          ──► select_reply → walk from the selection, emit
    CHAT_WITH_AGENT or a broken graph ──► handoff (status open, handoff=True)
    end of chain   ──► completed (flow state cleared)

Timeout handling is intentionally asymmetric. After expiry, interactive
(button or list) replies still resolve and extend the timeout, while free
text only restarts the flow if it is the trigger phrase. Any other free
text clears the flow state so automation rules answer instead.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from backend.connector import ApiConnector
from channels.base import (
    MAX_LIST_ROWS, InteractiveOption, OutboundGateway, ProviderError, SendReceipt,
)
from config.settings import AutomationConfig, get_settings
from context.flow_graph import (
    START, ChatbotGraph, FlowGraphError, Traversal, select_reply, walk,
)
from context.triggers import find_triggered, is_exact_trigger, matches_trigger
from database.store_base import ConversationStore
from models.schemas import (
    Chatbot, ChatbotNode, Conversation, ConversationStatus, EmittedMessage,
    FlowResult, FlowStatus, InboundMessage, Message, NodeType, Workspace,
)

logger = structlog.get_logger()

MEDIA_TYPES = ("image", "video", "audio", "document")
INTERACTIVE_TYPES = (NodeType.BUTTON_MESSAGE_NODE, NodeType.INTERACTIVE_NODE)


def _numbered(body: str, children: list[ChatbotNode]) -> str:
    lines = [f"{i}. {child.message}" for i, child in enumerate(children, start=1)]
    return "\n\n".join(part for part in (body, "\n".join(lines)) if part)


class FlowInterpreter:

    def __init__(
        self,
        store: ConversationStore,
        gateway: OutboundGateway,
        api_connector: Optional[ApiConnector] = None,
        config: Optional[AutomationConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.api = api_connector or ApiConnector()
        self.config = config or get_settings().automation

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.config.chatbot_timeout_seconds)

    # ── Entry points ──────────────────────────────────────────

    async def handle(
        self,
        conversation: Conversation,
        workspace: Workspace,
        inbound: InboundMessage,
        now: Optional[datetime] = None,
    ) -> FlowResult:
        """Continue the active flow, or start one when a trigger matches."""
        now = now or datetime.now(timezone.utc)
        if not (inbound.is_text or inbound.is_interactive):
            return FlowResult(status=FlowStatus.NOT_TRIGGERED)

        if not conversation.has_active_flow:
            return await self._try_trigger(conversation, workspace, inbound, now)

        chatbot = await self.store.get_chatbot(conversation.chatbot_id)
        if chatbot is None:
            logger.warning("chatbot_missing", chatbot_id=conversation.chatbot_id,
                           conversation_id=conversation.id)
            conversation = await self._clear(conversation, ConversationStatus.OPEN)
            return await self._try_trigger(conversation, workspace, inbound, now)

        if conversation.flow_expired(now):
            if inbound.is_interactive:
                logger.info("chatbot_timeout_extended", chatbot_id=chatbot.id,
                            conversation_id=conversation.id)
            elif matches_trigger(inbound.text, chatbot.trigger):
                logger.info("chatbot_restarted_after_timeout", chatbot_id=chatbot.id,
                            conversation_id=conversation.id)
                return await self.start(conversation, workspace, chatbot, now, inbound)
            else:
                await self._clear(conversation, ConversationStatus.OPEN)
                logger.info("chatbot_flow_expired", chatbot_id=chatbot.id,
                            conversation_id=conversation.id)
                return FlowResult(status=FlowStatus.EXPIRED, chatbot_id=chatbot.id)

        if inbound.is_text and is_exact_trigger(inbound.text, chatbot.trigger):
            return await self.start(conversation, workspace, chatbot, now, inbound)

        try:
            graph = ChatbotGraph.parse(chatbot.bot)
        except FlowGraphError as e:
            return await self._execute(conversation, workspace, chatbot,
                                       Traversal(FlowStatus.HANDOFF, error=str(e)), now, {})

        current = graph.get(conversation.current_node)
        if current is None:
            error = f"node '{conversation.current_node}' not found"
            return await self._execute(conversation, workspace, chatbot,
                                       Traversal(FlowStatus.HANDOFF, error=error), now, {})

        selection = select_reply(graph, current, inbound)
        if not selection.matched:
            logger.info("chatbot_reply_unmatched", chatbot_id=chatbot.id,
                        node=current.node_id, conversation_id=conversation.id)
            return FlowResult(status=FlowStatus.NO_MATCH, chatbot_id=chatbot.id,
                              current_node=conversation.current_node)

        context = self._context(conversation, inbound)
        if selection.complete:
            traversal = Traversal(FlowStatus.COMPLETED, last_node_id=current.node_id)
        else:
            traversal = walk(graph, selection.node_id, context, self.config.max_flow_steps)
        return await self._execute(conversation, workspace, chatbot, traversal, now, context)

    async def start(
        self,
        conversation: Conversation,
        workspace: Workspace,
        chatbot: Chatbot,
        now: Optional[datetime] = None,
        inbound: Optional[InboundMessage] = None,
    ) -> FlowResult:
        """Run a chatbot from its start node."""
        now = now or datetime.now(timezone.utc)
        context = self._context(conversation, inbound)
        try:
            graph = ChatbotGraph.parse(chatbot.bot)
        except FlowGraphError as e:
            traversal = Traversal(FlowStatus.HANDOFF, error=str(e))
        else:
            problems = graph.validate()
            if problems:
                logger.warning("chatbot_graph_integrity", chatbot_id=chatbot.id,
                               problems=problems[:5], total=len(problems))
            traversal = walk(graph, START, context, self.config.max_flow_steps)

        logger.info("chatbot_flow_started", chatbot_id=chatbot.id,
                    conversation_id=conversation.id, trigger=chatbot.trigger)
        return await self._execute(conversation, workspace, chatbot, traversal, now, context)

    async def find_chatbot(self, workspace_id: str, text: str) -> Optional[Chatbot]:
        chatbots = await self.store.list_chatbots(workspace_id, published_only=True)
        return find_triggered(text, chatbots)

    # ── Internals ─────────────────────────────────────────────

    async def _try_trigger(self, conversation, workspace, inbound, now) -> FlowResult:
        if not inbound.is_text or not inbound.text.strip():
            return FlowResult(status=FlowStatus.NOT_TRIGGERED)
        chatbot = await self.find_chatbot(conversation.workspace_id, inbound.text)
        if chatbot is None:
            return FlowResult(status=FlowStatus.NOT_TRIGGERED)
        return await self.start(conversation, workspace, chatbot, now, inbound)

    @staticmethod
    def _context(conversation: Conversation, inbound: Optional[InboundMessage]) -> dict[str, Any]:
        return {
            "message": inbound.text if inbound else "",
            "phone": conversation.phone,
            "contact_name": conversation.contact_name,
            "variables": {},
        }

    async def _execute(
        self,
        conversation: Conversation,
        workspace: Workspace,
        chatbot: Chatbot,
        traversal: Traversal,
        now: datetime,
        context: dict[str, Any],
    ) -> FlowResult:
        self.gateway.ensure_credentials(workspace)

        emitted: list[EmittedMessage] = []
        for node in traversal.emitted:
            emitted.extend(await self._emit(node, conversation, workspace, context))

        if traversal.outcome == FlowStatus.WAITING:
            await self.store.update_conversation(
                conversation.id,
                chatbot_id=chatbot.id,
                current_node=traversal.last_node_id,
                chatbot_timeout=now + self.timeout,
                status=ConversationStatus.CLOSED,
                handoff=False,
            )
        elif traversal.outcome == FlowStatus.HANDOFF:
            await self._clear(conversation, ConversationStatus.OPEN, handoff=True)
            log = logger.error if traversal.error else logger.info
            log("chatbot_handoff", chatbot_id=chatbot.id, conversation_id=conversation.id,
                node=traversal.last_node_id, error=traversal.error or None)
        else:
            await self._clear(conversation, ConversationStatus.CLOSED)
            logger.info("chatbot_flow_completed", chatbot_id=chatbot.id,
                        conversation_id=conversation.id, node=traversal.last_node_id)

        return FlowResult(
            status=traversal.outcome,
            chatbot_id=chatbot.id,
            current_node=traversal.waiting_node,
            emitted=emitted,
            error=traversal.error,
        )

    async def _clear(self, conversation: Conversation, status: ConversationStatus,
                     handoff: bool = False) -> Conversation:
        fields: dict[str, Any] = {
            "chatbot_id": None, "current_node": None, "chatbot_timeout": None, "status": status,
        }
        if handoff:
            fields["handoff"] = True
        updated = await self.store.update_conversation(conversation.id, **fields)
        return updated or conversation.model_copy(update=fields)

    # ── Emission ──────────────────────────────────────────────

    async def _emit(self, node: ChatbotNode, conversation: Conversation,
                    workspace: Workspace, context: dict[str, Any]) -> list[EmittedMessage]:
        phone = conversation.phone
        body = node.message.strip()
        out: list[EmittedMessage] = []
        consumed = True

        if node.type == NodeType.TEMPLATE_NODE:
            name = node.template_name.strip() or body
            out.append(await self._deliver(
                node, conversation, workspace, "template", f"Template: {name}",
                lambda: self.gateway.send_template(workspace, phone, name)))
        elif node.type in INTERACTIVE_TYPES and 0 < len(node.children) <= MAX_LIST_ROWS:
            options = [InteractiveOption(id=c.node_id, title=c.message or c.node_id)
                       for c in node.children]
            out.append(await self._deliver(
                node, conversation, workspace, "interactive", body,
                lambda: self.gateway.send_interactive(workspace, phone, body, options)))
        elif node.type in (NodeType.OPTION_MESSAGE_NODE, *INTERACTIVE_TYPES) and node.children:
            # menus too long for a list go out as numbered text
            text = _numbered(body, node.children)
            out.append(await self._deliver(
                node, conversation, workspace, "text", text,
                lambda: self.gateway.send_text(workspace, phone, text)))
        elif node.file_type in MEDIA_TYPES and node.link:
            out.append(await self._deliver(
                node, conversation, workspace, node.file_type, body,
                lambda: self.gateway.send_media(workspace, phone, node.file_type, node.link, body),
                link=node.link, file_type=node.file_type))
        else:
            consumed = False

        if node.cta is not None:
            cta_body = node.cta.button_text if consumed else body
            out.append(await self._deliver(
                node, conversation, workspace, "cta", cta_body,
                lambda: self.gateway.send_cta(workspace, phone, cta_body, node.cta),
                link=node.cta.url))
            consumed = True

        if not consumed and body:
            out.append(await self._deliver(
                node, conversation, workspace, "text", body,
                lambda: self.gateway.send_text(workspace, phone, body)))

        if node.location is not None:
            loc = node.location
            label = loc.name or loc.address or f"{loc.latitude},{loc.longitude}"
            out.append(await self._deliver(
                node, conversation, workspace, "location", label,
                lambda: self.gateway.send_location(workspace, phone, loc)))

        if node.api is not None:
            result = await self.api.call(node.api, context)
            context["variables"]["api"] = result.get("data")
            context["variables"][node.node_id] = result.get("data")
            out.append(EmittedMessage(node_id=node.node_id, kind="api", ok=bool(result.get("ok")),
                                      error=str(result.get("error", ""))))
        return out

    async def _deliver(
        self,
        node: ChatbotNode,
        conversation: Conversation,
        workspace: Workspace,
        kind: str,
        record_text: str,
        send: Callable[[], Awaitable[SendReceipt]],
        link: str = "",
        file_type: str = "none",
    ) -> EmittedMessage:
        message_id, error = "", ""
        try:
            receipt = await send()
            message_id = receipt.message_id
        except ProviderError as e:
            error = str(e)
            logger.warning("chatbot_send_failed", node=node.node_id, kind=kind,
                           conversation_id=conversation.id, error=error)

        await self.store.create_message(Message(
            conversation_id=conversation.id,
            workspace_id=workspace.id,
            phone=conversation.phone,
            type=kind,
            message=record_text,
            link=link,
            file_type=file_type,
            from_customer=False,
            is_bot=True,
            message_id=message_id,
            status="failed" if error else "sent",
        ))
        return EmittedMessage(node_id=node.node_id, kind=kind, ok=not error,
                              message_id=message_id, error=error)
