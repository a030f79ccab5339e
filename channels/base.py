"""
Outbound messaging gateway: base infrastructure.

Provides:
- ChannelError: structured error hierarchy (configuration vs provider)
- SendReceipt / InteractiveOption: send results and interactive choices
- MessageDeduplicator: TTL seen-set for webhook redeliveries
- OutboundGateway: abstract base every messaging transport implements
"""
from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import CtaButton, LocationCard, Workspace


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ConfigurationError(ChannelError):
    """The workspace cannot send at all (missing phone id or token)."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


class ProviderError(ChannelError):
    """The provider rejected or failed the request."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None,
                 retryable: bool = False, details: Any = None):
        self.status_code = status_code
        self.details = details
        super().__init__(message, channel, retryable=retryable)


# ══════════════════════════════════════════════════════════════
#  VALUE TYPES
# ══════════════════════════════════════════════════════════════

MAX_LIST_ROWS = 10                          # WhatsApp list messages


@dataclass
class SendReceipt:
    message_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class InteractiveOption:
    """One reply button or list row; a list holds at most MAX_LIST_ROWS."""
    id: str
    title: str
    description: str = ""


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set; providers redeliver webhooks they consider unacknowledged."""

    def __init__(self, ttl_seconds: float = 600.0, max_size: int = 10000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        if not key:
            return False
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]
            for k in oldest:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  OUTBOUND GATEWAY: Abstract Base
# ══════════════════════════════════════════════════════════════

class OutboundGateway(abc.ABC):
    """
    Sends messages to one recipient on behalf of a workspace.

    Every method raises ConfigurationError when the workspace has no
    usable credentials and ProviderError when the provider fails.
    """

    channel = ""

    @abc.abstractmethod
    async def send_text(self, workspace: Workspace, to: str, body: str) -> SendReceipt:
        ...

    @abc.abstractmethod
    async def send_template(self, workspace: Workspace, to: str, template_name: str,
                            language: str = "en") -> SendReceipt:
        ...

    @abc.abstractmethod
    async def send_interactive(self, workspace: Workspace, to: str, body: str,
                               options: list[InteractiveOption]) -> SendReceipt:
        """Reply buttons for up to three options, a list message beyond that."""
        ...

    @abc.abstractmethod
    async def send_media(self, workspace: Workspace, to: str, file_type: str,
                         link: str, caption: str = "") -> SendReceipt:
        ...

    @abc.abstractmethod
    async def send_location(self, workspace: Workspace, to: str,
                            location: LocationCard) -> SendReceipt:
        ...

    @abc.abstractmethod
    async def send_cta(self, workspace: Workspace, to: str, body: str,
                       cta: CtaButton) -> SendReceipt:
        ...

    def ensure_credentials(self, workspace: Workspace) -> None:
        if not workspace.phone_id:
            raise ConfigurationError(
                f"Workspace {workspace.id} has no WhatsApp phone number id", self.channel)
        if not workspace.access_token:
            raise ConfigurationError(
                f"Workspace {workspace.id} has no WhatsApp access token", self.channel)

    async def close(self) -> None:
        return None
