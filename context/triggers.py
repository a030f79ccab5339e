"""Trigger-phrase matching for starting chatbot flows."""
from __future__ import annotations

from typing import Iterable, Optional

from models.schemas import Chatbot


def _normalize(text: str) -> str:
    return (text or "").strip().lower()


def matches_trigger(message: str, trigger: str) -> bool:
    """
    Case-insensitive match that ignores a leading slash on either side.
    An exact match or the trigger appearing inside the message both count.
    """
    msg = _normalize(message)
    trig = _normalize(trigger)
    if not msg or not trig:
        return False
    bare_trig = trig.lstrip("/")
    bare_msg = msg.lstrip("/")
    if msg == trig or bare_msg == bare_trig:
        return True
    if not bare_trig:
        return False
    return trig in msg or bare_trig in msg


def is_exact_trigger(message: str, trigger: str) -> bool:
    msg = _normalize(message).lstrip("/")
    trig = _normalize(trigger).lstrip("/")
    return bool(trig) and msg == trig


def find_triggered(message: str, chatbots: Iterable[Chatbot]) -> Optional[Chatbot]:
    """Pick the chatbot a message starts. Exact matches beat containment."""
    candidates = [b for b in chatbots if b.publish and b.trigger.strip()]
    for bot in candidates:
        if is_exact_trigger(message, bot.trigger):
            return bot
    for bot in candidates:
        if matches_trigger(message, bot.trigger):
            return bot
    return None
