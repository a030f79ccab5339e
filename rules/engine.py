"""
Rule Resolver: Picks at most one automation rule for an inbound message.

Rules are matched by their semantic tag in a fixed priority order that
does not depend on where they sit in the tenant's rule list:

    OUT_OF_HOURS → NO_AGENT → WELCOME → IDLE_AI → FALLBACK

When none of those apply, the first enabled rule (in list order) that has
content for its response type is used.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.store_base import ConversationStore
from models.schemas import (
    AutomationRule, AutomationSettings, Conversation, ResponseType, RuleTag,
)

logger = structlog.get_logger()


def _minutes_since(then: datetime, now: datetime) -> float:
    return (now - then).total_seconds() / 60.0


def threshold_met(rule: AutomationRule, conversation: Conversation, now: datetime) -> bool:
    if rule.threshold is None:
        return True
    return _minutes_since(conversation.updated_at, now) >= rule.threshold


# ──────────────────────────────────────────────────────────────
#  Rule Resolver
# ──────────────────────────────────────────────────────────────

class RuleResolver:
    """
    Deterministic, priority-ordered rule selection.

    Agent availability is read from the store; a failing lookup skips the
    NO_AGENT rule instead of guessing.
    """

    def __init__(self, store: ConversationStore, welcome_window_minutes: int = 5):
        self.store = store
        self.welcome_window = timedelta(minutes=welcome_window_minutes)

    async def resolve(
        self,
        settings: AutomationSettings,
        conversation: Conversation,
        is_working: bool,
        now: Optional[datetime] = None,
    ) -> Optional[AutomationRule]:
        now = now or datetime.now(timezone.utc)

        checks = (
            (RuleTag.OUT_OF_HOURS, self._out_of_hours),
            (RuleTag.NO_AGENT, self._no_agent),
            (RuleTag.WELCOME, self._welcome),
            (RuleTag.IDLE_AI, self._idle_ai),
            (RuleTag.FALLBACK, self._fallback),
        )
        for tag, check in checks:
            rule = settings.rule(tag, enabled_only=True)
            if rule is None:
                continue
            if await check(rule, settings, conversation, is_working, now):
                self._log_selected(rule, conversation, reason=tag.name.lower())
                return rule

        for rule in settings.automation_rules:
            if not rule.enabled or not rule.has_content():
                continue
            if rule.response_type == ResponseType.AI and not threshold_met(rule, conversation, now):
                continue
            self._log_selected(rule, conversation, reason="content_scan")
            return rule

        logger.info("automation_no_rule", conversation_id=conversation.id,
                    workspace_id=conversation.workspace_id, is_working=is_working)
        return None

    # ── Predicates ────────────────────────────────────────────

    async def _out_of_hours(self, rule, settings, conversation, is_working, now) -> bool:
        return not is_working or settings.holiday_mode

    async def _no_agent(self, rule, settings, conversation, is_working, now) -> bool:
        if not is_working or settings.holiday_mode:
            return False
        try:
            members = await self.store.list_team_members(conversation.workspace_id)
        except Exception as e:
            logger.warning("agent_availability_check_failed",
                           workspace_id=conversation.workspace_id, error=str(e))
            return False
        if not members:
            return True
        return not any(m.available for m in members)

    async def _welcome(self, rule, settings, conversation, is_working, now) -> bool:
        return now - conversation.created_at < self.welcome_window

    async def _idle_ai(self, rule, settings, conversation, is_working, now) -> bool:
        return (
            rule.response_type == ResponseType.AI
            and rule.threshold is not None
            and threshold_met(rule, conversation, now)
        )

    async def _fallback(self, rule, settings, conversation, is_working, now) -> bool:
        return True

    @staticmethod
    def _log_selected(rule: AutomationRule, conversation: Conversation, reason: str):
        logger.info(
            "automation_rule_selected",
            rule_id=rule.id,
            tag=rule.tag.value if rule.tag else None,
            response_type=rule.response_type.value,
            reason=reason,
            conversation_id=conversation.id,
        )
