"""
Core data models for the WhatsApp auto-responder.
These are the universal types shared across all modules.

Tenant tooling stores settings and chatbot graphs as camelCase JSON, so
every model accepts camelCase aliases as well as the snake_case field
names and dumps camelCase with ``by_alias=True``.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ResponseType(str, Enum):
    TEXT = "text"
    CHATBOT = "chatbot"
    AI = "ai"
    TEMPLATE = "template"


class RuleTag(str, Enum):
    """Semantic role of an automation rule, keyed by its legacy id."""
    OUT_OF_HOURS = "1"
    NO_AGENT = "2"
    WELCOME = "3"
    IDLE_AI = "4"
    FALLBACK = "5"
    FOLLOW_UP_24H = "6"
    EXPIRED_CHAT = "7"
    OUT_OF_OFFICE = "8"
    ASSIGNED = "9"
    CUSTOM = "custom"

    @classmethod
    def from_rule_id(cls, rule_id: str) -> "RuleTag":
        try:
            return cls(str(rule_id).strip())
        except ValueError:
            return cls.CUSTOM


class ConversationStatus(str, Enum):
    OPEN = "open"          # visible to agents
    CLOSED = "closed"      # bot-owned or finished


class NodeType(str, Enum):
    START_NODE = "START_NODE"
    CHAT_BOT_MSG_NODE = "CHAT_BOT_MSG_NODE"
    MESSAGE_REPLY_NODE = "MESSAGE_REPLY_NODE"
    TEXT_NODE = "TEXT_NODE"
    IMAGE_NODE = "IMAGE_NODE"
    VIDEO_NODE = "VIDEO_NODE"
    AUDIO_NODE = "AUDIO_NODE"
    FILE_NODE = "FILE_NODE"
    OPTION_MESSAGE_NODE = "OPTION_MESSAGE_NODE"
    OPTION_NODE = "OPTION_NODE"
    BUTTON_MESSAGE_NODE = "BUTTON_MESSAGE_NODE"
    BUTTON_NODE = "BUTTON_NODE"
    INTERACTIVE_NODE = "INTERACTIVE_NODE"
    MAPS_NODE = "MAPS_NODE"
    CTA_BUTTON_NODE = "CTA_BUTTON_NODE"
    API_NODE = "API_NODE"
    CONDITION_NODE = "CONDITION_NODE"
    TEMPLATE_NODE = "TEMPLATE_NODE"
    CHAT_WITH_AGENT = "CHAT_WITH_AGENT"


class DispatchStatus(str, Enum):
    SENT = "sent"
    FALLBACK_SENT = "fallback_sent"
    CHATBOT = "chatbot"                # caller must start the rule's flow
    NOTHING_SENT = "nothing_sent"


class FlowStatus(str, Enum):
    NOT_TRIGGERED = "not_triggered"
    NO_MATCH = "no_match"
    EXPIRED = "expired"
    WAITING = "waiting"
    COMPLETED = "completed"
    HANDOFF = "handoff"


# ──────────────────────────────────────────────────────────────
#  Automation settings
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # eq | neq | gt | gte | lt | lte | in | contains | icontains | regex | exists
    value: Any = None


class DaySchedule(CamelModel):
    day: str                                  # English weekday name, "Monday"
    open: bool = False
    start_time: str = "09:00"
    end_time: str = "17:00"

    @field_validator("start_time", "end_time")
    @classmethod
    def _pad_time(cls, v: str) -> str:
        parts = str(v).strip().split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return f"{int(parts[0]):02d}:{int(parts[1]):02d}"


class AutomationRule(CamelModel):
    id: str
    enabled: bool = False
    description: str = ""
    response_type: ResponseType = ResponseType.TEXT
    ai_prompt: str = ""                       # text body, or the AI prompt
    material_id: Optional[str] = None
    material_name: str = ""
    threshold: Optional[int] = None           # minutes
    chatbot_flow: Optional[str] = None
    chatbot_flow_name: str = ""
    template_name: str = ""
    tag: Optional[RuleTag] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_type_key(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            legacy = data.pop("type", None)
            if legacy and not data.get("responseType") and not data.get("response_type"):
                data["responseType"] = legacy
            for key in ("id", "materialId", "material_id", "chatbotFlow", "chatbot_flow"):
                if data.get(key) is not None:
                    data[key] = str(data[key])
            for key in ("aiPrompt", "ai_prompt", "templateName", "template_name", "threshold"):
                if data.get(key) in (None, ""):
                    data.pop(key, None)
        return data

    @model_validator(mode="after")
    def _derive_tag(self) -> "AutomationRule":
        if self.tag is None:
            self.tag = RuleTag.from_rule_id(self.id)
        return self

    def has_content(self) -> bool:
        """True when the fields this rule's response type needs are present."""
        if self.response_type == ResponseType.TEXT:
            return bool(self.ai_prompt.strip() or self.material_id)
        if self.response_type == ResponseType.TEMPLATE:
            return bool(self.template_name.strip())
        if self.response_type == ResponseType.CHATBOT:
            return bool((self.chatbot_flow or "").strip())
        if self.response_type == ResponseType.AI:
            return bool(self.ai_prompt.strip())
        return False


class AutomationSettings(CamelModel):
    holiday_mode: bool = False
    working_hours: list[DaySchedule] = []
    automation_rules: list[AutomationRule] = []

    @field_validator("automation_rules", mode="before")
    @classmethod
    def _rules_from_mapping(cls, v: Any) -> Any:
        # Older settings documents keep rules keyed by id
        if isinstance(v, dict):
            rules = []
            for key, raw in v.items():
                raw = dict(raw or {})
                raw.setdefault("id", str(key))
                rules.append(raw)
            return rules
        return v

    def rule(self, tag: RuleTag, enabled_only: bool = False) -> Optional[AutomationRule]:
        """First rule with ``tag``; with ``enabled_only`` disabled rules are skipped."""
        for r in self.automation_rules:
            if r.tag == tag and (r.enabled or not enabled_only):
                return r
        return None


# ──────────────────────────────────────────────────────────────
#  Tenant records
# ──────────────────────────────────────────────────────────────

class Workspace(CamelModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    phone_id: str = ""                        # WhatsApp phone_number_id
    access_token: str = Field(default="", repr=False)
    waba_id: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.phone_id and self.access_token)


class TeamMember(CamelModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    name: str = ""
    available: bool = True


class ResponseMaterial(CamelModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    name: str
    content: str = ""
    type: str = "text"


class Conversation(CamelModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    phone: str
    contact_name: str = ""
    status: ConversationStatus = ConversationStatus.OPEN
    chatbot_id: Optional[str] = None
    current_node: Optional[str] = None
    chatbot_timeout: Optional[datetime] = None
    handoff: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_active_flow(self) -> bool:
        return self.chatbot_id is not None

    def flow_expired(self, now: datetime) -> bool:
        return self.chatbot_timeout is not None and self.chatbot_timeout < now


class Message(CamelModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    workspace_id: str
    phone: str = ""
    type: str = "text"                        # text | template | interactive | image | ...
    message: str = ""
    link: str = ""
    file_type: str = "none"
    from_customer: bool = False
    is_bot: bool = False
    message_id: str = ""                      # provider (wamid) id
    status: str = "sent"
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Chatbot graph
# ──────────────────────────────────────────────────────────────

class LocationCard(CamelModel):
    latitude: float
    longitude: float
    address: str = ""
    name: str = ""


class CtaButton(CamelModel):
    button_text: str
    url: str
    style: str = ""


class ApiCall(CamelModel):
    endpoint: str
    method: str = "GET"
    headers: dict[str, str] = {}
    body: Any = None
    description: str = ""


class ChatbotNode(CamelModel):
    node_id: str = ""
    type: NodeType
    message: str = ""
    link: str = ""
    file_type: str = "none"                   # image | video | audio | document | none
    children: list[ChatbotNode] = []
    next: Optional[str] = None
    need_response: bool = False
    cta: Optional[CtaButton] = None
    location: Optional[LocationCard] = None
    api: Optional[ApiCall] = None
    condition: list[RuleCondition] = []
    template_name: str = ""

    @field_validator("node_id", mode="before")
    @classmethod
    def _node_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("next", mode="before")
    @classmethod
    def _blank_next(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return str(v)

    @field_validator("file_type", mode="before")
    @classmethod
    def _file_type(cls, v: Any) -> str:
        return (v or "none").lower()


class Chatbot(CamelModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    name: str = ""
    trigger: str = ""
    bot: Any = None                           # graph blob: JSON string or dict
    publish: bool = False
    default: bool = False


# ──────────────────────────────────────────────────────────────
#  Webhook payloads
# ──────────────────────────────────────────────────────────────

class InteractiveReply(CamelModel):
    type: str = "button_reply"                # button_reply | list_reply
    id: str = ""
    title: str = ""


class InboundMessage(CamelModel):
    phone: str
    message_id: str = ""
    type: str = "text"
    text: str = ""
    interactive: Optional[InteractiveReply] = None
    contact_name: str = ""
    phone_number_id: str = ""
    timestamp: Optional[datetime] = None
    link: str = ""                            # media id for media messages

    @property
    def is_text(self) -> bool:
        return self.type == "text"

    @property
    def is_interactive(self) -> bool:
        return self.interactive is not None


class StatusUpdate(CamelModel):
    message_id: str
    status: str
    recipient: str = ""


# ──────────────────────────────────────────────────────────────
#  Per-invocation results
# ──────────────────────────────────────────────────────────────

class DispatchOutcome(BaseModel):
    status: DispatchStatus
    rule_id: str = ""
    response_type: Optional[ResponseType] = None
    content: str = ""                         # what was actually sent
    message_ids: list[str] = []
    chatbot_id: Optional[str] = None
    error: str = ""

    @property
    def sent(self) -> bool:
        return self.status in (DispatchStatus.SENT, DispatchStatus.FALLBACK_SENT)


class EmittedMessage(BaseModel):
    node_id: str
    kind: str                                 # text | interactive | template | cta | location | api, or the media type
    ok: bool = True
    message_id: str = ""
    error: str = ""


class FlowResult(BaseModel):
    status: FlowStatus
    chatbot_id: Optional[str] = None
    current_node: Optional[str] = None
    emitted: list[EmittedMessage] = []
    error: str = ""

    @property
    def handled(self) -> bool:
        return self.status in (FlowStatus.WAITING, FlowStatus.COMPLETED, FlowStatus.HANDOFF)


class ProcessingResult(BaseModel):
    conversation_id: str = ""
    route: str = ""                           # chatbot | automation | none
    flow: Optional[FlowResult] = None
    dispatch: Optional[DispatchOutcome] = None
    rule_id: Optional[str] = None
    error: str = ""
