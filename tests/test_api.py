"""Tests for the HTTP surface."""
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.main import StartupError, build_dispatcher, create_app
from config.settings import Settings, WhatsAppConfig
from models.schemas import EventKind


@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_root=str(tmp_path),
        whatsapp=WhatsAppConfig(access_token="tok", verify_token="verify-me"),
    )


@pytest.fixture
def fake_dispatcher():
    dispatcher = MagicMock()
    dispatcher.handle_events = AsyncMock(return_value=[])
    dispatcher.stats.return_value = {"cached_flows": 0, "sessions": 0, "actions": 3}
    return dispatcher


@pytest.fixture
def client(settings, fake_dispatcher):
    with TestClient(create_app(settings, fake_dispatcher)) as c:
        yield c


INBOUND = {
    "entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": "PHONE_ID"},
        "contacts": [{"profile": {"name": "Ana"}}],
        "messages": [{"from": "5491100000001", "type": "text", "text": {"body": "hola"}}],
    }}]}],
}


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "cached_flows": 0, "sessions": 0, "actions": 3}


class TestWebhookVerify:
    def test_handshake_echoes_challenge(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "4242",
        })
        assert response.status_code == 200
        assert response.text == "4242"

    def test_wrong_token(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "4242",
        })
        assert response.status_code == 403


class TestWebhookInbound:
    def test_dispatches_parsed_events(self, client, fake_dispatcher):
        response = client.post("/webhook", json=INBOUND)
        assert response.status_code == 200
        events = fake_dispatcher.handle_events.await_args.args[0]
        assert len(events) == 1
        assert events[0].kind == EventKind.TEXT
        assert events[0].sender == "5491100000001"
        assert events[0].tenant_key == "PHONE_ID"

    def test_malformed_body_is_acknowledged(self, client, fake_dispatcher):
        response = client.post("/webhook", content=b"{not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        fake_dispatcher.handle_events.assert_not_awaited()

    @pytest.mark.parametrize("payload", [{"entry": ["junk"]}, {"entry": [{"changes": "x"}]}, {"entry": 5}])
    def test_unexpected_payload_shape_is_acknowledged(self, client, fake_dispatcher, payload):
        response = client.post("/webhook", json=payload)
        assert response.status_code == 200
        fake_dispatcher.handle_events.assert_awaited_once_with([])

    def test_status_only_payload(self, client, fake_dispatcher):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert client.post("/webhook", json=payload).status_code == 200
        fake_dispatcher.handle_events.assert_awaited_once_with([])

    def test_signature_enforced_with_app_secret(self, settings, fake_dispatcher):
        settings.whatsapp.app_secret = "appsecret"
        body = json.dumps(INBOUND).encode()
        signature = "sha256=" + hmac.new(b"appsecret", body, hashlib.sha256).hexdigest()
        with TestClient(create_app(settings, fake_dispatcher)) as c:
            bad = c.post("/webhook", content=body, headers={"X-Hub-Signature-256": "sha256=00"})
            good = c.post("/webhook", content=body, headers={"X-Hub-Signature-256": signature})
        assert bad.status_code == 403
        assert good.status_code == 200
        assert fake_dispatcher.handle_events.await_count == 1


class TestAssets:
    def test_serves_tenant_asset(self, client, tmp_path):
        assets = tmp_path / "broker" / "assets" / "img"
        assets.mkdir(parents=True)
        (assets / "logo.png").write_bytes(b"\x89PNG")
        response = client.get("/tenants/broker/assets/img/logo.png")
        assert response.status_code == 200
        assert response.content == b"\x89PNG"
        assert response.headers["cache-control"] == "public, max-age=3600"

    def test_missing_asset(self, client):
        assert client.get("/tenants/broker/assets/nope.png").status_code == 404

    def test_traversal_rejected(self, client, tmp_path):
        (tmp_path / "broker").mkdir()
        (tmp_path / "broker" / "flow.json").write_text("{}", encoding="utf-8")
        response = client.get("/tenants/broker/assets/..%2Fflow.json")
        assert response.status_code in (400, 404)
        assert response.content != b"{}"


class TestBootstrap:
    def test_missing_token_is_fatal(self):
        with pytest.raises(StartupError):
            build_dispatcher(Settings())

    def test_startup_fails_without_token(self, tmp_path):
        app = create_app(Settings(config_root=str(tmp_path)))
        with pytest.raises(StartupError):
            with TestClient(app):
                pass
