"""HTTP tests for the webhook and settings endpoints."""
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

import api.main as main
from channels.base import MessageDeduplicator
from channels.whatsapp_adapter import WhatsAppCloudGateway
from config.settings import WhatsAppConfig
from core.orchestrator import build_processor
from rules.settings_service import AutomationSettingsService

SECRET = "appsecret"


def _webhook(text: str = "hi", message_id: str = "wamid.in1", phone_id: str = "1001") -> dict:
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": phone_id},
        "contacts": [{"wa_id": "2348012345678", "profile": {"name": "Chidi"}}],
        "messages": [{"from": "2348012345678", "id": message_id, "type": "text",
                      "text": {"body": text}}],
    }}]}]}


def _post(client: TestClient, payload: dict, secret: str = SECRET):
    body = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post("/webhooks/whatsapp", content=body,
                       headers={"X-Hub-Signature-256": f"sha256={sig}",
                                "Content-Type": "application/json"})


@pytest.fixture
def client(monkeypatch, store, make_gateway, generator):
    outbound = make_gateway()
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "gateway", WhatsAppCloudGateway(
        WhatsAppConfig(verify_token="hub-token", app_secret=SECRET)))
    monkeypatch.setattr(main, "processor", build_processor(store, outbound, generator=generator))
    monkeypatch.setattr(main, "settings_service", AutomationSettingsService(store))
    monkeypatch.setattr(main, "deduplicator", MessageDeduplicator())
    test_client = TestClient(main.app)
    test_client.outbound = outbound
    return test_client


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestVerification:
    def test_challenge_echoed(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "hub-token", "hub.challenge": "1158201444"})
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token(self, client):
        resp = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1"})
        assert resp.status_code == 403


class TestInboundWebhook:
    @pytest.mark.asyncio
    async def test_message_processed(self, client, store, workspace, agent):
        await store.upsert_workspace(workspace)
        await store.upsert_team_member(agent)

        resp = _post(client, _webhook())

        assert resp.status_code == 200
        data = resp.json()
        assert data["processed"] == 1
        assert data["results"][0]["route"] == "automation"
        assert client.outbound.sent[0]["to"] == "+2348012345678"

    def test_bad_signature(self, client):
        assert _post(client, _webhook(), secret="wrong").status_code == 403

    def test_invalid_json(self, client):
        body = b"not json"
        sig = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
        resp = client.post("/webhooks/whatsapp", content=body,
                           headers={"X-Hub-Signature-256": f"sha256={sig}"})
        assert resp.status_code == 400

    def test_unknown_workspace_skipped(self, client):
        resp = _post(client, _webhook(phone_id="9999"))
        assert resp.status_code == 200
        assert resp.json()["processed"] == 0

    @pytest.mark.asyncio
    async def test_redelivery_is_deduplicated(self, client, store, workspace):
        await store.upsert_workspace(workspace)
        _post(client, _webhook(message_id="wamid.same"))
        resp = _post(client, _webhook(message_id="wamid.same"))
        assert resp.json()["processed"] == 0

    def test_status_updates_counted(self, client):
        payload = {"entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "1001"},
            "statuses": [{"id": "wamid.out", "status": "read"}],
        }}]}]}
        resp = _post(client, payload)
        assert resp.json()["statuses"] == 1


class TestAutomationSettingsApi:
    def test_unknown_workspace(self, client):
        assert client.get("/workspaces/nope/automation-settings").status_code == 404

    @pytest.mark.asyncio
    async def test_get_creates_defaults(self, client, store, workspace):
        await store.upsert_workspace(workspace)
        resp = client.get(f"/workspaces/{workspace.id}/automation-settings")
        assert resp.status_code == 200
        doc = resp.json()
        assert len(doc["automationRules"]) == 9
        assert len(doc["workingHours"]) == 7

    @pytest.mark.asyncio
    async def test_put_replaces_settings(self, client, store, workspace):
        await store.upsert_workspace(workspace)
        resp = client.put(f"/workspaces/{workspace.id}/automation-settings", json={
            "holidayMode": True,
            "automationRules": [{"id": "1", "enabled": True, "aiPrompt": "Closed today"}],
        })
        assert resp.status_code == 200
        assert resp.json()["holidayMode"] is True
        stored = await store.get_automation_settings(workspace.id)
        assert stored["automationRules"][0]["aiPrompt"] == "Closed today"

    @pytest.mark.asyncio
    async def test_put_rejects_invalid_document(self, client, store, workspace):
        await store.upsert_workspace(workspace)
        resp = client.put(f"/workspaces/{workspace.id}/automation-settings",
                          json={"automationRules": [{"enabled": "maybe"}]})
        assert resp.status_code == 422
