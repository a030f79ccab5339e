"""
Chatbot Flow Graph: parsing, integrity checks and pure traversal.

A chatbot is a tenant-authored graph keyed by nodeId with one ``start``
entry. Traversal here has no side effects: it decides which nodes to emit
and where the flow stops. Sending and persistence happen in
context/flow_interpreter.py.

Node roles:

  connector   START_NODE, OPTION_NODE, BUTTON_NODE     never emitted
  waits       OPTION_MESSAGE_NODE, BUTTON_MESSAGE_NODE,
              INTERACTIVE_NODE, MESSAGE_REPLY_NODE     emitted, then stop
  branch      CONDITION_NODE                           picks a child by condition
  handoff     CHAT_WITH_AGENT                          emitted, then human takes over
  message     everything else                          emitted, follow ``next``

Any node with ``needResponse`` also waits.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional, Union

from pydantic import ValidationError

from models.schemas import ChatbotNode, FlowStatus, InboundMessage, NodeType
from utils.conditions import evaluate_conditions

logger = structlog.get_logger()

START = "start"

CONNECTOR_TYPES = frozenset({NodeType.START_NODE, NodeType.OPTION_NODE, NodeType.BUTTON_NODE})
WAITING_TYPES = frozenset({
    NodeType.OPTION_MESSAGE_NODE, NodeType.BUTTON_MESSAGE_NODE,
    NodeType.INTERACTIVE_NODE, NodeType.MESSAGE_REPLY_NODE,
})


class FlowGraphError(Exception):
    """The chatbot graph blob cannot be used at all."""


def waits_for_reply(node: ChatbotNode) -> bool:
    return node.need_response or node.type in WAITING_TYPES


# ──────────────────────────────────────────────────────────────
#  Graph
# ──────────────────────────────────────────────────────────────

class ChatbotGraph:
    """Immutable nodeId → ChatbotNode mapping."""

    def __init__(self, nodes: dict[str, ChatbotNode]):
        self._nodes = nodes

    @classmethod
    def parse(cls, blob: Union[str, dict[str, Any], None]) -> "ChatbotGraph":
        if blob is None or blob == "":
            raise FlowGraphError("Chatbot has no graph")
        if isinstance(blob, (str, bytes)):
            try:
                blob = json.loads(blob)
            except ValueError as e:
                raise FlowGraphError(f"Chatbot graph is not valid JSON: {e}") from e
        if not isinstance(blob, dict):
            raise FlowGraphError("Chatbot graph must be an object keyed by nodeId")

        nodes: dict[str, ChatbotNode] = {}
        try:
            for key, raw in blob.items():
                if not isinstance(raw, dict):
                    raise FlowGraphError(f"Node {key!r} is not an object")
                node = ChatbotNode.model_validate(raw)
                if not node.node_id:
                    node = node.model_copy(update={"node_id": str(key)})
                nodes[str(key)] = node
        except ValidationError as e:
            raise FlowGraphError(f"Invalid chatbot node: {e.errors()[0].get('msg', e)}") from e

        # Inline children are addressable by id even when the builder
        # did not also store them at the top level.
        for node in list(nodes.values()):
            for child in node.children:
                if child.node_id and child.node_id not in nodes:
                    nodes[child.node_id] = child

        return cls(nodes)

    def get(self, node_id: Optional[str]) -> Optional[ChatbotNode]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def validate(self) -> list[str]:
        """Return integrity problems; an empty list means the graph is sound."""
        errors = []
        if START not in self._nodes:
            errors.append("missing 'start' node")
        for node_id, node in self._nodes.items():
            if node.next is not None and node.next not in self._nodes:
                errors.append(f"node '{node_id}' next '{node.next}' not found")
            for child in node.children:
                if child.next is not None and child.next not in self._nodes:
                    errors.append(
                        f"node '{node_id}' child '{child.node_id}' next '{child.next}' not found")
        return errors


# ──────────────────────────────────────────────────────────────
#  Traversal result
# ──────────────────────────────────────────────────────────────

class Traversal:
    """Outcome of walking the graph from one node."""

    def __init__(
        self,
        outcome: FlowStatus,
        emitted: list[ChatbotNode] = None,
        last_node_id: Optional[str] = None,
        error: str = "",
    ):
        self.outcome = outcome
        self.emitted = emitted or []
        self.last_node_id = last_node_id
        self.error = error

    @property
    def waiting_node(self) -> Optional[str]:
        return self.last_node_id if self.outcome == FlowStatus.WAITING else None

    def __repr__(self):
        return (f"<Traversal {self.outcome.value} at {self.last_node_id} "
                f"[{len(self.emitted)} emitted]>")


def _branch(node: ChatbotNode, context: dict[str, Any]) -> Optional[str]:
    for child in node.children:
        if child.condition and evaluate_conditions(child.condition, context):
            return child.next
    return node.next


def walk(
    graph: ChatbotGraph,
    start_id: str,
    context: Optional[dict[str, Any]] = None,
    max_steps: int = 50,
) -> Traversal:
    """
    Follow ``next`` pointers from ``start_id`` until a node waits for a
    reply, the chain ends, or a handoff is required.

    Revisiting a node in the same pass, running past ``max_steps`` or
    meeting a dangling reference all end in a handoff.
    """
    context = context or {}
    emitted: list[ChatbotNode] = []
    seen: set[str] = set()
    node_id: Optional[str] = start_id
    last: Optional[str] = None

    while node_id is not None:
        if node_id in seen:
            return Traversal(FlowStatus.HANDOFF, emitted, last, f"cycle at node '{node_id}'")
        if len(seen) >= max_steps:
            return Traversal(FlowStatus.HANDOFF, emitted, last, f"exceeded {max_steps} steps")
        node = graph.get(node_id)
        if node is None:
            return Traversal(FlowStatus.HANDOFF, emitted, last, f"node '{node_id}' not found")

        seen.add(node_id)
        last = node_id
        if node.type not in CONNECTOR_TYPES:
            emitted.append(node)

        if node.type == NodeType.CHAT_WITH_AGENT:
            return Traversal(FlowStatus.HANDOFF, emitted, last)
        if waits_for_reply(node):
            return Traversal(FlowStatus.WAITING, emitted, last)
        if node.type == NodeType.CONDITION_NODE:
            node_id = _branch(node, context)
        else:
            node_id = node.next

    return Traversal(FlowStatus.COMPLETED, emitted, last)


# ──────────────────────────────────────────────────────────────
#  Reply selection
# ──────────────────────────────────────────────────────────────

class Selection:
    """Where a reply leads. ``node_id`` None with ``complete`` ends the flow."""

    def __init__(self, node_id: Optional[str] = None, complete: bool = False):
        self.node_id = node_id
        self.complete = complete

    @property
    def matched(self) -> bool:
        return self.node_id is not None or self.complete

    def __repr__(self):
        if self.complete:
            return "<Selection complete>"
        return f"<Selection {self.node_id}>" if self.node_id else "<NoMatch>"


def _child_by_title(node: ChatbotNode, title: str) -> Optional[ChatbotNode]:
    wanted = title.strip().lower()
    if not wanted:
        return None
    for child in node.children:
        if child.message.strip().lower() == wanted:
            return child
    return None


def _child_target(graph: ChatbotGraph, child: ChatbotNode) -> Selection:
    # Walk from the child itself when it is addressable; it is a connector
    # and walking it leads on to its ``next``.
    if child.node_id and child.node_id in graph:
        return Selection(child.node_id)
    if child.next is not None:
        return Selection(child.next)
    return Selection(complete=True)


def select_reply(
    graph: ChatbotGraph,
    current: Optional[ChatbotNode],
    inbound: InboundMessage,
) -> Selection:
    """Resolve an inbound reply against the node the flow is waiting on."""
    if inbound.interactive is not None:
        reply = inbound.interactive
        if reply.id and reply.id in graph:
            return Selection(reply.id)
        if current is not None:
            child = _child_by_title(current, reply.title)
            if child is not None:
                return _child_target(graph, child)
        return Selection()

    if current is None:
        return Selection()

    text = inbound.text.strip()
    if current.children:
        if text.isdecimal():
            index = int(text)
            if 1 <= index <= len(current.children):
                return _child_target(graph, current.children[index - 1])
            return Selection()
        child = _child_by_title(current, text)
        return _child_target(graph, child) if child is not None else Selection()

    if not text:
        return Selection()
    # Free-text prompt: any answer moves on
    if current.next is not None:
        return Selection(current.next)
    return Selection(complete=True)
