"""Shared test fixtures for the WhatsApp autoresponder."""
import itertools
import pytest
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from channels.base import OutboundGateway, ProviderError, SendReceipt
from config.settings import AutomationConfig
from core.engine import TextGenerator
from database.store_memory import InMemoryStore
from models.schemas import (
    AutomationSettings, Chatbot, Conversation, TeamMember, Workspace,
)
from rules.defaults import default_settings


class FakeGateway(OutboundGateway):
    """Records every send; kinds listed in ``fail`` raise ProviderError."""

    channel = "whatsapp"

    def __init__(self, fail: tuple[str, ...] = ()):
        self.fail = set(fail)
        self.sent: list[dict[str, Any]] = []
        self._ids = itertools.count(1)

    def _send(self, kind: str, to: str, **payload) -> SendReceipt:
        if kind in self.fail:
            raise ProviderError(f"{kind} rejected", self.channel, status_code=400)
        message_id = f"wamid.{next(self._ids)}"
        self.sent.append({"kind": kind, "to": to, "id": message_id, **payload})
        return SendReceipt(message_id=message_id)

    async def send_text(self, workspace, to, body):
        return self._send("text", to, body=body)

    async def send_template(self, workspace, to, template_name, language="en"):
        return self._send("template", to, name=template_name, language=language)

    async def send_interactive(self, workspace, to, body, options):
        return self._send("interactive", to, body=body, options=options)

    async def send_media(self, workspace, to, file_type, link, caption=""):
        return self._send("media", to, file_type=file_type, link=link, caption=caption)

    async def send_location(self, workspace, to, location):
        return self._send("location", to, location=location)

    async def send_cta(self, workspace, to, body, cta):
        return self._send("cta", to, body=body, cta=cta)

    def kinds(self) -> list[str]:
        return [s["kind"] for s in self.sent]

    def texts(self) -> list[str]:
        return [s.get("body", "") for s in self.sent if s["kind"] == "text"]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def generator() -> MagicMock:
    gen = MagicMock(spec=TextGenerator)
    gen.generate = AsyncMock(return_value="Hi! Just checking in, can we help with anything?")
    return gen


@pytest.fixture
def automation_config() -> AutomationConfig:
    return AutomationConfig(timezone="UTC")


@pytest.fixture
def workspace() -> Workspace:
    return Workspace(id="ws_1", name="Acme Stores", phone_id="1001", access_token="EAAG-test")


@pytest.fixture
def bare_workspace() -> Workspace:
    """A workspace that never finished WhatsApp onboarding."""
    return Workspace(id="ws_2", name="No Creds")


@pytest.fixture
def conversation() -> Conversation:
    return Conversation(id="conv_1", workspace_id="ws_1", phone="+2348012345678")


@pytest.fixture
def settings() -> AutomationSettings:
    return AutomationSettings.model_validate(default_settings())


@pytest.fixture
def always_open(settings) -> AutomationSettings:
    """Default rules with every day open around the clock."""
    for day in settings.working_hours:
        day.open = True
        day.start_time = "00:00"
        day.end_time = "23:59"
    return settings


@pytest.fixture
def agent() -> TeamMember:
    return TeamMember(id="tm_1", workspace_id="ws_1", name="Ada", available=True)


@pytest.fixture
def menu_graph() -> dict[str, Any]:
    """
    start → welcome → menu (numbered options)
        1. Sales   → catalogue (image) → end
        2. Support → agent handoff
    """
    return {
        "start": {"nodeId": "start", "type": "START_NODE", "next": "welcome"},
        "welcome": {"nodeId": "welcome", "type": "CHAT_BOT_MSG_NODE",
                    "message": "Welcome to Acme!", "next": "menu"},
        "menu": {
            "nodeId": "menu", "type": "OPTION_MESSAGE_NODE",
            "message": "How can we help?",
            "children": [
                {"nodeId": "opt_sales", "type": "OPTION_NODE", "message": "Sales", "next": "catalogue"},
                {"nodeId": "opt_support", "type": "OPTION_NODE", "message": "Support", "next": "agent"},
            ],
        },
        "catalogue": {"nodeId": "catalogue", "type": "CHAT_BOT_MSG_NODE",
                      "message": "Here is our catalogue", "fileType": "image",
                      "link": "https://cdn.example.com/catalogue.jpg", "next": None},
        "agent": {"nodeId": "agent", "type": "CHAT_WITH_AGENT",
                  "message": "Connecting you to an agent"},
    }


@pytest.fixture
def button_graph() -> dict[str, Any]:
    return {
        "start": {"nodeId": "start", "type": "START_NODE", "next": "ask"},
        "ask": {
            "nodeId": "ask", "type": "BUTTON_MESSAGE_NODE", "message": "Track your order?",
            "children": [
                {"nodeId": "btn_yes", "type": "BUTTON_NODE", "message": "Yes", "next": "thanks"},
                {"nodeId": "btn_no", "type": "BUTTON_NODE", "message": "No", "next": "bye"},
            ],
        },
        "thanks": {"nodeId": "thanks", "type": "CHAT_BOT_MSG_NODE",
                   "message": "Your order is on its way", "next": None},
        "bye": {"nodeId": "bye", "type": "CHAT_BOT_MSG_NODE", "message": "Okay, bye!", "next": None},
    }


@pytest.fixture
def menu_bot(menu_graph) -> Chatbot:
    return Chatbot(id="bot_menu", workspace_id="ws_1", name="Menu", trigger="menu",
                   bot=menu_graph, publish=True)


@pytest.fixture
def button_bot(button_graph) -> Chatbot:
    return Chatbot(id="bot_track", workspace_id="ws_1", name="Tracking", trigger="/track",
                   bot=button_graph, publish=True)


@pytest.fixture
def make_gateway():
    """Build a FakeGateway with failing send kinds, ``make_gateway(fail=("text",))``."""
    return FakeGateway
