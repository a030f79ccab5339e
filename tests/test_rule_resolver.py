"""Tests for priority-ordered automation rule selection."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from models.schemas import (
    AutomationRule, AutomationSettings, Conversation, ResponseType, RuleTag, TeamMember,
)
from rules.engine import RuleResolver, threshold_met

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _conv(age_minutes: float = 60, idle_minutes: float = 1) -> Conversation:
    return Conversation(
        id="conv_1", workspace_id="ws_1", phone="+2348012345678",
        created_at=NOW - timedelta(minutes=age_minutes),
        updated_at=NOW - timedelta(minutes=idle_minutes),
    )


def _only(*rules: dict) -> AutomationSettings:
    return AutomationSettings.model_validate({"automationRules": list(rules)})


@pytest_asyncio.fixture
async def staffed(store, agent):
    await store.upsert_team_member(agent)
    return store


class TestAutomationRuleModel:
    def test_tag_derived_from_id(self):
        assert AutomationRule(id="1").tag == RuleTag.OUT_OF_HOURS
        assert AutomationRule(id="5").tag == RuleTag.FALLBACK
        assert AutomationRule(id="x-custom").tag == RuleTag.CUSTOM

    def test_numeric_ids_are_stringified(self):
        rule = AutomationRule.model_validate({"id": 3, "materialId": 42})
        assert rule.id == "3"
        assert rule.material_id == "42"

    def test_legacy_type_key(self):
        rule = AutomationRule.model_validate({"id": "4", "type": "ai", "aiPrompt": "x"})
        assert rule.response_type == ResponseType.AI

    def test_rules_keyed_by_id(self):
        s = AutomationSettings.model_validate({
            "automationRules": {"3": {"enabled": True, "aiPrompt": "hi"}},
        })
        assert s.rule(RuleTag.WELCOME).ai_prompt == "hi"

    def test_has_content_per_type(self):
        assert AutomationRule(id="9", ai_prompt="hello").has_content()
        assert AutomationRule(id="9", material_id="m1").has_content()
        assert not AutomationRule(id="9").has_content()
        assert not AutomationRule(id="9", response_type="template", ai_prompt="x").has_content()
        assert AutomationRule(id="9", response_type="chatbot", chatbot_flow="bot_1").has_content()


class TestThreshold:
    def test_no_threshold_always_met(self):
        assert threshold_met(AutomationRule(id="4"), _conv(idle_minutes=0), NOW)

    def test_threshold_measured_from_last_activity(self):
        rule = AutomationRule(id="4", threshold=15)
        assert not threshold_met(rule, _conv(idle_minutes=10), NOW)
        assert threshold_met(rule, _conv(idle_minutes=15), NOW)


class TestRuleResolver:
    @pytest.mark.asyncio
    async def test_out_of_hours_wins(self, staffed, settings):
        rule = await RuleResolver(staffed).resolve(settings, _conv(age_minutes=1), False, NOW)
        assert rule.tag == RuleTag.OUT_OF_HOURS

    @pytest.mark.asyncio
    async def test_holiday_mode_counts_as_out_of_hours(self, staffed, settings):
        settings.holiday_mode = True
        rule = await RuleResolver(staffed).resolve(settings, _conv(), True, NOW)
        assert rule.tag == RuleTag.OUT_OF_HOURS

    @pytest.mark.asyncio
    async def test_no_agent_during_hours(self, store, settings):
        await store.upsert_team_member(TeamMember(workspace_id="ws_1", available=False))
        rule = await RuleResolver(store).resolve(settings, _conv(age_minutes=1), True, NOW)
        assert rule.tag == RuleTag.NO_AGENT

    @pytest.mark.asyncio
    async def test_availability_failure_skips_no_agent(self, store, settings):
        store.list_team_members = AsyncMock(side_effect=RuntimeError("db down"))
        rule = await RuleResolver(store).resolve(settings, _conv(age_minutes=1), True, NOW)
        assert rule.tag == RuleTag.WELCOME

    @pytest.mark.asyncio
    async def test_welcome_for_new_conversation(self, staffed, settings):
        rule = await RuleResolver(staffed).resolve(settings, _conv(age_minutes=2), True, NOW)
        assert rule.tag == RuleTag.WELCOME

    @pytest.mark.asyncio
    async def test_welcome_window_is_five_minutes(self, staffed, settings):
        rule = await RuleResolver(staffed).resolve(settings, _conv(age_minutes=5), True, NOW)
        assert rule.tag == RuleTag.FALLBACK

    @pytest.mark.asyncio
    async def test_idle_ai_after_threshold(self, staffed, settings):
        settings.rule(RuleTag.IDLE_AI).enabled = True
        resolver = RuleResolver(staffed)
        assert (await resolver.resolve(settings, _conv(idle_minutes=20), True, NOW)).tag == RuleTag.IDLE_AI
        assert (await resolver.resolve(settings, _conv(idle_minutes=5), True, NOW)).tag == RuleTag.FALLBACK

    @pytest.mark.asyncio
    async def test_fallback_when_nothing_else(self, staffed, settings):
        rule = await RuleResolver(staffed).resolve(settings, _conv(), True, NOW)
        assert rule.tag == RuleTag.FALLBACK

    @pytest.mark.asyncio
    async def test_priority_ignores_list_order(self, staffed):
        s = _only(
            {"id": "5", "enabled": True, "aiPrompt": "fallback"},
            {"id": "3", "enabled": True, "aiPrompt": "welcome"},
        )
        rule = await RuleResolver(staffed).resolve(s, _conv(age_minutes=1), True, NOW)
        assert rule.id == "3"

    @pytest.mark.asyncio
    async def test_disabled_rules_never_selected(self, staffed):
        s = _only({"id": "1", "enabled": False, "aiPrompt": "closed"})
        assert await RuleResolver(staffed).resolve(s, _conv(), False, NOW) is None

    @pytest.mark.asyncio
    async def test_disabled_duplicate_does_not_hide_enabled_rule(self, staffed):
        s = _only(
            {"id": "1", "enabled": False, "aiPrompt": "old closing notice"},
            {"id": "after-hours", "tag": "1", "enabled": True, "aiPrompt": "closed"},
            {"id": "5", "enabled": True, "aiPrompt": "fallback"},
        )
        rule = await RuleResolver(staffed).resolve(s, _conv(), False, NOW)
        assert rule.id == "after-hours"

    def test_rule_lookup_enabled_only(self):
        s = _only(
            {"id": "3", "enabled": False, "aiPrompt": "draft"},
            {"id": "hello", "tag": "3", "enabled": True, "aiPrompt": "live"},
        )
        assert s.rule(RuleTag.WELCOME).ai_prompt == "draft"
        assert s.rule(RuleTag.WELCOME, enabled_only=True).ai_prompt == "live"

    @pytest.mark.asyncio
    async def test_content_scan_picks_first_custom_rule(self, staffed):
        s = _only(
            {"id": "6", "enabled": True},
            {"id": "9", "enabled": True, "aiPrompt": "assigned"},
            {"id": "8", "enabled": True, "aiPrompt": "away"},
        )
        rule = await RuleResolver(staffed).resolve(s, _conv(), True, NOW)
        assert rule.id == "9"

    @pytest.mark.asyncio
    async def test_content_scan_respects_ai_threshold(self, staffed):
        s = _only({"id": "custom-ai", "enabled": True, "responseType": "ai",
                   "aiPrompt": "nudge", "threshold": 30})
        assert await RuleResolver(staffed).resolve(s, _conv(idle_minutes=5), True, NOW) is None
        rule = await RuleResolver(staffed).resolve(s, _conv(idle_minutes=45), True, NOW)
        assert rule.id == "custom-ai"

    @pytest.mark.asyncio
    async def test_empty_settings_select_nothing(self, staffed):
        assert await RuleResolver(staffed).resolve(AutomationSettings(), _conv(), True, NOW) is None
