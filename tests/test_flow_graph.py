"""Tests for chatbot graph parsing, traversal and reply selection."""
import json

import pytest

from context.flow_graph import (
    START, ChatbotGraph, FlowGraphError, select_reply, walk,
)
from models.schemas import FlowStatus, InboundMessage, InteractiveReply


def _text(body: str) -> InboundMessage:
    return InboundMessage(phone="+2348012345678", type="text", text=body)


def _button(node_id: str, title: str = "") -> InboundMessage:
    return InboundMessage(phone="+2348012345678", type="interactive",
                          interactive=InteractiveReply(id=node_id, title=title))


class TestChatbotGraphParse:
    def test_parses_dict(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert START in graph
        assert graph.get("menu").children[0].node_id == "opt_sales"

    def test_parses_json_string(self, menu_graph):
        graph = ChatbotGraph.parse(json.dumps(menu_graph))
        assert graph.get("welcome").message == "Welcome to Acme!"

    def test_inline_children_are_addressable(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert "opt_support" in graph

    def test_node_id_defaults_to_key(self):
        graph = ChatbotGraph.parse({"start": {"type": "START_NODE"}})
        assert graph.get("start").node_id == "start"

    @pytest.mark.parametrize("blob", [None, "", "{not json", "[1, 2]"])
    def test_unusable_blobs(self, blob):
        with pytest.raises(FlowGraphError):
            ChatbotGraph.parse(blob)

    def test_unknown_node_type(self):
        with pytest.raises(FlowGraphError):
            ChatbotGraph.parse({"start": {"type": "TELEPORT_NODE"}})

    def test_validate_reports_dangling_references(self):
        graph = ChatbotGraph.parse({
            "start": {"type": "START_NODE", "next": "ghost"},
        })
        problems = graph.validate()
        assert any("ghost" in p for p in problems)

    def test_validate_reports_missing_start(self):
        graph = ChatbotGraph.parse({"a": {"type": "CHAT_BOT_MSG_NODE"}})
        assert "missing 'start' node" in graph.validate()


class TestWalk:
    def test_start_emits_until_waiting_node(self, menu_graph):
        t = walk(ChatbotGraph.parse(menu_graph), START)
        assert t.outcome == FlowStatus.WAITING
        assert [n.node_id for n in t.emitted] == ["welcome", "menu"]
        assert t.waiting_node == "menu"

    def test_connectors_are_not_emitted(self, menu_graph):
        t = walk(ChatbotGraph.parse(menu_graph), "opt_sales")
        assert [n.node_id for n in t.emitted] == ["catalogue"]
        assert t.outcome == FlowStatus.COMPLETED

    def test_chat_with_agent_hands_off(self, menu_graph):
        t = walk(ChatbotGraph.parse(menu_graph), "opt_support")
        assert t.outcome == FlowStatus.HANDOFF
        assert t.emitted[-1].node_id == "agent"
        assert not t.error

    def test_dangling_next_hands_off_with_error(self):
        graph = ChatbotGraph.parse({
            "start": {"type": "START_NODE", "next": "hello"},
            "hello": {"type": "CHAT_BOT_MSG_NODE", "message": "hi", "next": "ghost"},
        })
        t = walk(graph, START)
        assert t.outcome == FlowStatus.HANDOFF
        assert "ghost" in t.error
        assert [n.node_id for n in t.emitted] == ["hello"]

    def test_cycle_hands_off(self):
        graph = ChatbotGraph.parse({
            "start": {"type": "START_NODE", "next": "a"},
            "a": {"type": "CHAT_BOT_MSG_NODE", "message": "a", "next": "b"},
            "b": {"type": "CHAT_BOT_MSG_NODE", "message": "b", "next": "a"},
        })
        t = walk(graph, START)
        assert t.outcome == FlowStatus.HANDOFF
        assert "cycle" in t.error

    def test_step_limit(self):
        blob = {"start": {"type": "START_NODE", "next": "n0"}}
        for i in range(10):
            blob[f"n{i}"] = {"type": "CHAT_BOT_MSG_NODE", "message": str(i), "next": f"n{i + 1}"}
        blob["n10"] = {"type": "CHAT_BOT_MSG_NODE", "message": "end"}
        t = walk(ChatbotGraph.parse(blob), START, max_steps=5)
        assert t.outcome == FlowStatus.HANDOFF
        assert "exceeded" in t.error

    def test_need_response_waits(self):
        graph = ChatbotGraph.parse({
            "start": {"type": "START_NODE", "next": "ask"},
            "ask": {"type": "CHAT_BOT_MSG_NODE", "message": "Your name?",
                    "needResponse": True, "next": "done"},
            "done": {"type": "CHAT_BOT_MSG_NODE", "message": "Thanks"},
        })
        t = walk(graph, START)
        assert t.outcome == FlowStatus.WAITING
        assert t.waiting_node == "ask"

    def test_condition_node_branches(self):
        graph = ChatbotGraph.parse({
            "start": {"type": "START_NODE", "next": "check"},
            "check": {
                "type": "CONDITION_NODE", "next": "other",
                "children": [
                    {"nodeId": "c_vip", "type": "OPTION_NODE", "next": "vip",
                     "condition": [{"field": "message", "operator": "icontains", "value": "vip"}]},
                ],
            },
            "vip": {"type": "CHAT_BOT_MSG_NODE", "message": "Hello VIP"},
            "other": {"type": "CHAT_BOT_MSG_NODE", "message": "Hello"},
        })
        assert walk(graph, START, {"message": "I am VIP"}).emitted[-1].node_id == "vip"
        assert walk(graph, START, {"message": "hi"}).emitted[-1].node_id == "other"


class TestSelectReply:
    def test_numbered_text(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert select_reply(graph, graph.get("menu"), _text("2")).node_id == "opt_support"

    def test_number_out_of_range_is_no_match(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert not select_reply(graph, graph.get("menu"), _text("7")).matched
        assert not select_reply(graph, graph.get("menu"), _text("0")).matched

    @pytest.mark.parametrize("reply", ["²", "³", "1²", "½"])
    def test_non_decimal_digits_are_no_match(self, menu_graph, reply):
        graph = ChatbotGraph.parse(menu_graph)
        assert not select_reply(graph, graph.get("menu"), _text(reply)).matched

    def test_other_script_decimal_digits_select(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        # Arabic-Indic two
        assert select_reply(graph, graph.get("menu"), _text("٢")).node_id == "opt_support"

    def test_option_title_text(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert select_reply(graph, graph.get("menu"), _text(" sales ")).node_id == "opt_sales"

    def test_unrelated_text_is_no_match(self, menu_graph):
        graph = ChatbotGraph.parse(menu_graph)
        assert not select_reply(graph, graph.get("menu"), _text("what?")).matched

    def test_interactive_id(self, button_graph):
        graph = ChatbotGraph.parse(button_graph)
        assert select_reply(graph, graph.get("ask"), _button("btn_no")).node_id == "btn_no"

    def test_interactive_falls_back_to_title(self, button_graph):
        graph = ChatbotGraph.parse(button_graph)
        assert select_reply(graph, graph.get("ask"), _button("stale-id", "Yes")).node_id == "btn_yes"

    def test_interactive_unknown(self, button_graph):
        graph = ChatbotGraph.parse(button_graph)
        assert not select_reply(graph, graph.get("ask"), _button("stale-id", "Maybe")).matched

    def test_free_text_prompt_moves_to_next(self):
        graph = ChatbotGraph.parse({
            "ask": {"type": "MESSAGE_REPLY_NODE", "message": "Your name?", "next": "done"},
            "done": {"type": "CHAT_BOT_MSG_NODE", "message": "Thanks"},
        })
        assert select_reply(graph, graph.get("ask"), _text("Ada")).node_id == "done"

    def test_free_text_prompt_without_next_completes(self):
        graph = ChatbotGraph.parse({"ask": {"type": "MESSAGE_REPLY_NODE", "message": "Bye?"}})
        sel = select_reply(graph, graph.get("ask"), _text("ok"))
        assert sel.complete and sel.matched
