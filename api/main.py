"""
FastAPI Application: WhatsApp webhooks + automation settings.

Provides:
- Webhook verification and inbound delivery for the WhatsApp Cloud API
- Per-workspace automation settings (read with defaults, replace)
- Health check
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from backend.connector import ApiConnector
from channels.base import MessageDeduplicator
from channels.whatsapp_adapter import WhatsAppCloudGateway
from config.settings import get_settings
from core.orchestrator import build_processor
from database.session import close_db, init_db
from database.store_factory import create_store
from rules.settings_service import AutomationSettingsService, to_document

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
store = create_store({"store_backend": _settings_boot.database.store_backend})
gateway = WhatsAppCloudGateway(_settings_boot.whatsapp)
api_connector = ApiConnector(timeout=_settings_boot.whatsapp.request_timeout)
processor = build_processor(store, gateway, api_connector=api_connector)
settings_service = AutomationSettingsService(store)
deduplicator = MessageDeduplicator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sql = settings.database.store_backend == "sql"
    if sql:
        await init_db(settings.database.url)

    logger.info("autoresponder_started", app=settings.app_name,
                store=type(store).__name__)
    yield

    await gateway.close()
    await api_connector.close()
    if sql:
        await close_db()
    logger.info("autoresponder_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="WhatsApp Autoresponder API",
    description="Automation rules and chatbot flows for WhatsApp workspaces",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(store).__name__,
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    challenge = gateway.verify_webhook(dict(request.query_params))
    if challenge is None:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Receive WhatsApp messages and delivery statuses."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not gateway.verify_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        payload = json.loads(body_bytes)
    except ValueError:
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid payload")

    messages, statuses = gateway.parse_webhook(payload)

    for update in statuses:
        await processor.handle_status(update)

    results = []
    for inbound in messages:
        if inbound.message_id and deduplicator.is_duplicate(inbound.message_id):
            logger.info("whatsapp_duplicate_skipped", message_id=inbound.message_id)
            continue

        workspace = await store.find_workspace_by_phone_id(inbound.phone_number_id)
        if workspace is None:
            logger.warning("whatsapp_unknown_workspace", phone_number_id=inbound.phone_number_id)
            continue

        # The provider redelivers on non-200, so one bad message must not
        # fail the whole batch.
        try:
            result = await processor.handle_inbound(inbound, workspace)
        except Exception:
            logger.exception("whatsapp_inbound_failed", workspace_id=workspace.id,
                             message_id=inbound.message_id)
            continue
        results.append(result.model_dump(mode="json"))

    return {"status": "ok", "processed": len(results), "statuses": len(statuses),
            "results": results}


# ══════════════════════════════════════════════════════════════
#  AUTOMATION SETTINGS
# ══════════════════════════════════════════════════════════════

async def _require_workspace(workspace_id: str):
    workspace = await store.get_workspace(workspace_id)
    if workspace is None:
        raise HTTPException(404, "Workspace not found")
    return workspace


@app.get("/workspaces/{workspace_id}/automation-settings")
async def get_automation_settings(workspace_id: str):
    await _require_workspace(workspace_id)
    try:
        settings = await settings_service.get_or_create(workspace_id)
    except ValueError as e:
        raise HTTPException(422, str(e))
    return to_document(settings)


@app.put("/workspaces/{workspace_id}/automation-settings")
async def put_automation_settings(workspace_id: str, payload: dict[str, Any] = Body(...)):
    await _require_workspace(workspace_id)
    try:
        settings = await settings_service.save_settings(workspace_id, payload)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_url=False, include_context=False,
                                          include_input=False))
    return to_document(settings)
