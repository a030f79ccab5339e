"""
Automation settings service: read, save and bootstrap per-workspace settings.

A workspace without settings gets the default schedule, the nine default
rules and the default response materials on first access.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from pydantic import ValidationError

from database.store_base import ConversationStore
from models.schemas import AutomationSettings, ResponseMaterial, RuleTag
from rules.defaults import DEFAULT_MATERIALS, default_settings

logger = structlog.get_logger()


def to_document(settings: AutomationSettings) -> dict[str, Any]:
    """The camelCase document stored per workspace and served over the API.

    A rule's tag is written only when it differs from the one its id implies.
    """
    doc = settings.model_dump(mode="json", by_alias=True)
    for raw, rule in zip(doc["automationRules"], settings.automation_rules):
        if rule.tag is None or rule.tag == RuleTag.from_rule_id(rule.id):
            raw.pop("tag", None)
    return doc


class AutomationSettingsService:

    def __init__(self, store: ConversationStore):
        self.store = store

    async def get_settings(self, workspace_id: str) -> Optional[AutomationSettings]:
        raw = await self.store.get_automation_settings(workspace_id)
        if raw is None:
            return None
        try:
            return AutomationSettings.model_validate(raw)
        except ValidationError as e:
            logger.error("automation_settings_invalid", workspace_id=workspace_id,
                         errors=e.error_count())
            raise ValueError(f"Stored automation settings for {workspace_id} are invalid") from e

    async def save_settings(
        self, workspace_id: str, settings: Union[AutomationSettings, dict[str, Any]],
    ) -> AutomationSettings:
        if not isinstance(settings, AutomationSettings):
            settings = AutomationSettings.model_validate(settings)
        await self.store.save_automation_settings(workspace_id, to_document(settings))
        logger.info("automation_settings_updated", workspace_id=workspace_id,
                    rules=len(settings.automation_rules),
                    holiday_mode=settings.holiday_mode)
        return settings

    async def get_or_create(self, workspace_id: str) -> AutomationSettings:
        settings = await self.get_settings(workspace_id)
        if settings is not None:
            return settings

        materials = await self.create_default_materials(workspace_id)
        by_name = {m.name: m for m in materials}

        data = default_settings()
        for rule in data["automationRules"]:
            mat = by_name.get(rule.get("materialName", ""))
            if mat is not None:
                rule["materialId"] = mat.id

        settings = await self.save_settings(workspace_id, data)
        logger.info("automation_settings_created", workspace_id=workspace_id)
        return settings

    async def create_default_materials(self, workspace_id: str) -> list[ResponseMaterial]:
        """Create the default canned responses, skipping names that already exist."""
        existing = {m.name: m for m in await self.store.list_materials(workspace_id)}
        result = []
        for name, mtype, content in DEFAULT_MATERIALS:
            if name in existing:
                result.append(existing[name])
                continue
            mat = await self.store.upsert_material(ResponseMaterial(
                workspace_id=workspace_id, name=name, type=mtype, content=content,
            ))
            result.append(mat)
        return result
