"""Tests for executing resolved automation rules."""
import pytest

from channels.base import ConfigurationError
from core.dispatcher import ResponseDispatcher
from core.engine import GenerationError
from models.schemas import AutomationRule, DispatchStatus, ResponseMaterial


def _dispatcher(store, gateway, generator) -> ResponseDispatcher:
    return ResponseDispatcher(store, gateway, generator, template_language="en_US")


async def _bot_messages(store, conversation):
    return [m for m in await store.find_recent_messages(conversation.id) if m.is_bot]


class TestTextRules:
    @pytest.mark.asyncio
    async def test_sends_prompt(self, store, gateway, generator, conversation, workspace):
        rule = AutomationRule(id="3", enabled=True, ai_prompt="Welcome!")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.SENT
        assert gateway.texts() == ["Welcome!"]
        msgs = await _bot_messages(store, conversation)
        assert len(msgs) == 1
        assert msgs[0].message_id == out.message_ids[0]

    @pytest.mark.asyncio
    async def test_uses_material_when_prompt_blank(self, store, gateway, generator,
                                                   conversation, workspace):
        await store.upsert_material(ResponseMaterial(id="m1", workspace_id="ws_1",
                                                     name="Hours", content="We open at 9"))
        rule = AutomationRule(id="1", enabled=True, material_id="m1")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.content == "We open at 9"

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, store, gateway, generator, conversation, workspace):
        rule = AutomationRule(id="1", enabled=True, material_id="missing")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.NOTHING_SENT
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_provider_failure_is_nothing_sent(self, store, make_gateway, generator, conversation, workspace):
        gateway = make_gateway(fail=("text",))
        rule = AutomationRule(id="5", enabled=True, ai_prompt="Thanks")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.NOTHING_SENT
        assert "rejected" in out.error
        assert await _bot_messages(store, conversation) == []


class TestAiRules:
    @pytest.mark.asyncio
    async def test_sends_generated_text(self, store, gateway, generator, conversation, workspace):
        rule = AutomationRule(id="4", enabled=True, response_type="ai", ai_prompt="Nudge them")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        generator.generate.assert_awaited_once_with("Nudge them")
        assert out.status == DispatchStatus.SENT
        assert gateway.texts() == ["Hi! Just checking in, can we help with anything?"]

    @pytest.mark.asyncio
    async def test_generation_failure_sends_prompt(self, store, gateway, generator,
                                                   conversation, workspace):
        generator.generate.side_effect = GenerationError("quota")
        rule = AutomationRule(id="4", enabled=True, response_type="ai", ai_prompt="Still there?")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.FALLBACK_SENT
        assert gateway.texts() == ["Still there?"]
        assert len(await _bot_messages(store, conversation)) == 1


class TestTemplateRules:
    @pytest.mark.asyncio
    async def test_sends_template(self, store, gateway, generator, conversation, workspace):
        rule = AutomationRule(id="3", enabled=True, response_type="template",
                              template_name="hello_world")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.SENT
        assert gateway.sent[0]["name"] == "hello_world"
        assert gateway.sent[0]["language"] == "en_US"
        msgs = await _bot_messages(store, conversation)
        assert msgs[0].message == "Template: hello_world"

    @pytest.mark.asyncio
    async def test_failed_template_falls_back_once(self, store, make_gateway, generator, conversation, workspace):
        gateway = make_gateway(fail=("template",))
        rule = AutomationRule(id="3", enabled=True, response_type="template",
                              template_name="hello_world", ai_prompt="Hello there")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.FALLBACK_SENT
        assert gateway.kinds() == ["text"]
        assert len(await _bot_messages(store, conversation)) == 1

    @pytest.mark.asyncio
    async def test_failed_template_without_prompt(self, store, make_gateway, generator, conversation, workspace):
        gateway = make_gateway(fail=("template",))
        rule = AutomationRule(id="3", enabled=True, response_type="template",
                              template_name="hello_world")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.NOTHING_SENT
        assert gateway.sent == []


class TestChatbotRulesAndCredentials:
    @pytest.mark.asyncio
    async def test_chatbot_rule_sends_nothing(self, store, gateway, generator, conversation, workspace):
        rule = AutomationRule(id="3", enabled=True, response_type="chatbot", chatbot_flow="bot_menu")
        out = await _dispatcher(store, gateway, generator).dispatch(
            rule, conversation.phone, conversation, workspace)
        assert out.status == DispatchStatus.CHATBOT
        assert out.chatbot_id == "bot_menu"
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_missing_credentials_raise(self, store, gateway, generator, conversation,
                                             bare_workspace):
        rule = AutomationRule(id="5", enabled=True, ai_prompt="Thanks")
        with pytest.raises(ConfigurationError):
            await _dispatcher(store, gateway, generator).dispatch(
                rule, conversation.phone, conversation, bare_workspace)
        generator.generate.assert_not_awaited()
        assert gateway.sent == []
