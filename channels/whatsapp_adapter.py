"""
WhatsApp Gateway: WhatsApp Business Cloud API integration.

Provides:
- Outbound: text, template, interactive buttons/lists, media, location, CTA URL
- Webhook verification (hub.verify_token challenge)
- Webhook signature verification (X-Hub-Signature-256)
- Inbound parsing: text, interactive (button_reply, list_reply), template
  quick-reply buttons, media, location; delivery status updates
"""
from __future__ import annotations

import hashlib
import hmac
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import (
    MAX_LIST_ROWS, InteractiveOption, OutboundGateway, ProviderError, SendReceipt,
)
from config.settings import WhatsAppConfig, get_settings
from models.schemas import (
    CtaButton, InboundMessage, InteractiveReply, LocationCard, StatusUpdate, Workspace,
)
from utils.phone import to_wa_id

logger = structlog.get_logger()

MAX_REPLY_BUTTONS = 3
MEDIA_TYPES = ("image", "video", "audio", "document")


def _clip(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


# ══════════════════════════════════════════════════════════════
#  PAYLOAD BUILDERS
# ══════════════════════════════════════════════════════════════

def _envelope(to: str, msg_type: str, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to_wa_id(to),
        "type": msg_type,
        msg_type: body,
    }


def text_payload(to: str, body: str) -> dict[str, Any]:
    return _envelope(to, "text", {"preview_url": False, "body": body})


def template_payload(to: str, template_name: str, language: str = "en") -> dict[str, Any]:
    return _envelope(to, "template", {"name": template_name, "language": {"code": language}})


def interactive_payload(to: str, body: str, options: list[InteractiveOption]) -> dict[str, Any]:
    body = body.strip() or "Please choose an option"
    if len(options) <= MAX_REPLY_BUTTONS:
        interactive = {
            "type": "button",
            "body": {"text": body},
            "action": {"buttons": [
                {"type": "reply", "reply": {"id": o.id, "title": _clip(o.title, 20)}}
                for o in options
            ]},
        }
    else:
        if len(options) > MAX_LIST_ROWS:
            logger.warning("whatsapp_list_rows_clipped", options=len(options),
                           sent=MAX_LIST_ROWS, dropped=[o.id for o in options[MAX_LIST_ROWS:]])
        rows = []
        for o in options[:MAX_LIST_ROWS]:
            row = {"id": o.id, "title": _clip(o.title, 24)}
            if o.description:
                row["description"] = _clip(o.description, 72)
            rows.append(row)
        interactive = {
            "type": "list",
            "body": {"text": body},
            "action": {"button": "Options", "sections": [{"title": "Options", "rows": rows}]},
        }
    return _envelope(to, "interactive", interactive)


def media_payload(to: str, file_type: str, link: str, caption: str = "") -> dict[str, Any]:
    if file_type not in MEDIA_TYPES:
        raise ValueError(f"Unsupported media type: {file_type}")
    media: dict[str, Any] = {"link": link}
    if file_type == "document":
        media["filename"] = link.rstrip("/").rsplit("/", 1)[-1] or "document"
    if caption and file_type != "audio":
        media["caption"] = caption
    return _envelope(to, file_type, media)


def location_payload(to: str, location: LocationCard) -> dict[str, Any]:
    loc: dict[str, Any] = {"latitude": location.latitude, "longitude": location.longitude}
    if location.name:
        loc["name"] = location.name
    if location.address:
        loc["address"] = location.address
    return _envelope(to, "location", loc)


def cta_payload(to: str, body: str, cta: CtaButton) -> dict[str, Any]:
    return _envelope(to, "interactive", {
        "type": "cta_url",
        "body": {"text": body.strip() or cta.button_text},
        "action": {
            "name": "cta_url",
            "parameters": {"display_text": _clip(cta.button_text, 20), "url": cta.url},
        },
    })


# ══════════════════════════════════════════════════════════════
#  WHATSAPP GATEWAY
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudGateway(OutboundGateway):
    """
    Cloud API client shared by all workspaces; credentials come from the
    workspace on every call.
    """

    channel = "whatsapp"

    def __init__(self, config: WhatsAppConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().whatsapp
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Send ──────────────────────────────────────────────────

    async def send_text(self, workspace: Workspace, to: str, body: str) -> SendReceipt:
        return await self._send(workspace, text_payload(to, body))

    async def send_template(self, workspace: Workspace, to: str, template_name: str,
                            language: str = None) -> SendReceipt:
        language = language or self.config.template_language
        return await self._send(workspace, template_payload(to, template_name, language))

    async def send_interactive(self, workspace: Workspace, to: str, body: str,
                               options: list[InteractiveOption]) -> SendReceipt:
        return await self._send(workspace, interactive_payload(to, body, options))

    async def send_media(self, workspace: Workspace, to: str, file_type: str,
                         link: str, caption: str = "") -> SendReceipt:
        return await self._send(workspace, media_payload(to, file_type, self.absolute_link(link), caption))

    async def send_location(self, workspace: Workspace, to: str,
                            location: LocationCard) -> SendReceipt:
        return await self._send(workspace, location_payload(to, location))

    async def send_cta(self, workspace: Workspace, to: str, body: str,
                       cta: CtaButton) -> SendReceipt:
        return await self._send(workspace, cta_payload(to, body, cta))

    def absolute_link(self, link: str) -> str:
        if link.startswith(("http://", "https://")) or not self.config.media_base_url:
            return link
        return f"{self.config.media_base_url.rstrip('/')}/{link.lstrip('/')}"

    async def _send(self, workspace: Workspace, payload: dict[str, Any]) -> SendReceipt:
        self.ensure_credentials(workspace)
        url = f"{self.config.api_base.rstrip('/')}/{workspace.phone_id}/messages"
        headers = {
            "Authorization": f"Bearer {workspace.access_token}",
            "Content-Type": "application/json",
        }
        attempts = max(1, int(self.config.send_attempts))

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, max=10),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                receipt = await self._post(url, headers, payload)
        logger.info("whatsapp_message_sent", workspace_id=workspace.id,
                    type=payload["type"], msg_id=receipt.message_id)
        return receipt

    async def _post(self, url: str, headers: dict[str, str], payload: dict[str, Any]) -> SendReceipt:
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("whatsapp_transport_error", error=str(e))
            raise ProviderError(f"WhatsApp request failed: {e}", self.channel, retryable=True) from e

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text}

        if resp.status_code >= 400:
            error = data.get("error", {}) if isinstance(data, dict) else {}
            message = error.get("message") or f"HTTP {resp.status_code}"
            logger.warning("whatsapp_send_rejected", status_code=resp.status_code,
                           error_code=error.get("code"), error=message)
            raise ProviderError(
                f"WhatsApp API error: {message}", self.channel,
                status_code=resp.status_code,
                retryable=resp.status_code == 429 or resp.status_code >= 500,
                details=error,
            )

        messages = data.get("messages") or [{}]
        return SendReceipt(message_id=messages[0].get("id", ""), raw=data)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature_header: str) -> bool:
        """Check X-Hub-Signature-256. Without an app secret nothing is checked."""
        secret = self.config.app_secret
        if not secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header.split("=", 1)[1])

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> tuple[list[InboundMessage], list[StatusUpdate]]:
        """Parse a Cloud API webhook into inbound messages and status updates."""
        messages: list[InboundMessage] = []
        statuses: list[StatusUpdate] = []

        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                metadata = value.get("metadata") or {}
                phone_number_id = str(metadata.get("phone_number_id", ""))

                names = {}
                for contact in value.get("contacts") or []:
                    names[contact.get("wa_id", "")] = (contact.get("profile") or {}).get("name", "")

                for msg in value.get("messages") or []:
                    parsed = self._parse_message(msg, phone_number_id, names)
                    if parsed is not None:
                        messages.append(parsed)

                for st in value.get("statuses") or []:
                    if st.get("id") and st.get("status"):
                        statuses.append(StatusUpdate(
                            message_id=st["id"], status=st["status"],
                            recipient=st.get("recipient_id", ""),
                        ))

        return messages, statuses

    @staticmethod
    def _parse_message(msg: dict[str, Any], phone_number_id: str,
                       names: dict[str, str]) -> Optional[InboundMessage]:
        sender = msg.get("from", "")
        if not sender:
            return None
        msg_type = msg.get("type", "text")

        timestamp = None
        if str(msg.get("timestamp", "")).isdigit():
            timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)

        text = ""
        link = ""
        interactive = None

        if msg_type == "text":
            text = (msg.get("text") or {}).get("body", "")

        elif msg_type == "interactive":
            raw = msg.get("interactive") or {}
            itype = raw.get("type", "")
            if itype in ("button_reply", "list_reply"):
                reply = raw.get(itype) or {}
                interactive = InteractiveReply(type=itype, id=str(reply.get("id", "")),
                                               title=reply.get("title", ""))
                text = interactive.title

        elif msg_type == "button":
            # quick-reply button on a template message
            raw = msg.get("button") or {}
            interactive = InteractiveReply(type="button_reply", id=str(raw.get("payload", "")),
                                           title=raw.get("text", ""))
            text = interactive.title

        elif msg_type in MEDIA_TYPES or msg_type == "sticker":
            media = msg.get(msg_type) or {}
            text = media.get("caption", "")
            link = media.get("id", "")

        elif msg_type == "location":
            loc = msg.get("location") or {}
            text = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"

        return InboundMessage(
            phone=f"+{sender.lstrip('+')}",  # wa_id is always international
            message_id=msg.get("id", ""),
            type=msg_type,
            text=text,
            interactive=interactive,
            contact_name=names.get(sender, ""),
            phone_number_id=phone_number_id,
            timestamp=timestamp,
            link=link,
        )
