"""Default automation settings and canned responses for new workspaces."""
from __future__ import annotations

from typing import Any

from rules.working_hours import WEEKDAYS

WELCOME_TEXT = "Hello! Welcome to our WhatsApp support. How can we help you today?"
OUT_OF_HOURS_TEXT = (
    "Thank you for your message. We are currently outside our working hours. "
    "We'll get back to you as soon as possible."
)
NO_AGENT_TEXT = (
    "Thank you for your message. Our team is currently busy. "
    "We'll respond to you shortly."
)
FALLBACK_TEXT = "Thank you for your message. We're here to help and will get back to you soon."
FOLLOW_UP_TEXT = (
    "Hi! We noticed you haven't responded in a while. "
    "Is there anything else we can help you with?"
)
OUT_OF_OFFICE_TEXT = "We are currently out of office. We'll respond to your message when we return."

# (name, type, content)
DEFAULT_MATERIALS: list[tuple[str, str, str]] = [
    ("Welcome", "welcome", WELCOME_TEXT),
    ("Out of Hours", "text", OUT_OF_HOURS_TEXT),
    ("No Agent Available", "text", NO_AGENT_TEXT),
    ("Fallback", "text", FALLBACK_TEXT),
    ("Follow-up", "text", FOLLOW_UP_TEXT),
    ("Out of Office", "text", OUT_OF_OFFICE_TEXT),
]


def default_working_hours() -> list[dict[str, Any]]:
    return [
        {"day": day, "open": day not in ("Saturday", "Sunday"),
         "startTime": "09:00", "endTime": "17:00"}
        for day in WEEKDAYS
    ]


def default_rules() -> list[dict[str, Any]]:
    return [
        {"id": "1", "enabled": True, "responseType": "text",
         "description": "Reply when a message arrives outside working hours",
         "aiPrompt": OUT_OF_HOURS_TEXT, "materialName": "Out of Hours"},
        {"id": "2", "enabled": True, "responseType": "text",
         "description": "Reply when no agent is available during working hours",
         "aiPrompt": NO_AGENT_TEXT, "materialName": "No Agent Available"},
        {"id": "3", "enabled": True, "responseType": "text",
         "description": "Welcome message for new conversations",
         "aiPrompt": WELCOME_TEXT, "materialName": "Welcome"},
        {"id": "4", "enabled": False, "responseType": "ai", "threshold": 15,
         "description": "AI nudge when the customer has been idle",
         "aiPrompt": FOLLOW_UP_TEXT, "materialName": "Follow-up"},
        {"id": "5", "enabled": True, "responseType": "text",
         "description": "Fallback reply when no other rule applies",
         "aiPrompt": FALLBACK_TEXT, "materialName": "Fallback"},
        {"id": "6", "enabled": False, "responseType": "text",
         "description": "Follow up 24 hours after the last message",
         "aiPrompt": "Hi! It's been a while since we last heard from you. "
                     "Is there anything we can help you with?"},
        {"id": "7", "enabled": False, "responseType": "text",
         "description": "Notify the customer when a chat expires",
         "aiPrompt": "This chat has expired or been closed. "
                     "Please contact support for assistance."},
        {"id": "8", "enabled": False, "responseType": "text",
         "description": "Out of office notice",
         "aiPrompt": OUT_OF_OFFICE_TEXT, "materialName": "Out of Office"},
        {"id": "9", "enabled": False, "responseType": "text",
         "description": "Confirm assignment to the team",
         "aiPrompt": "Your chat has been assigned to our team. "
                     "An agent will be with you shortly."},
    ]


def default_settings() -> dict[str, Any]:
    return {
        "holidayMode": False,
        "workingHours": default_working_hours(),
        "automationRules": default_rules(),
    }
