############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# test_api.py: HTTP-level tests for the FastAPI application
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""HTTP-level tests: the real app, with the provider behind MockTransports."""

import hashlib
import hmac
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.api.auth import issue_session_token
from backend.app.db import crud
from backend.app.db.session import session_scope
from backend.app.main import create_app
from backend.app.services.billing import BOT_ID_METADATA_KEY, StripeBillingGateway

SPAWN_BODY = {
    "name": "jarvis",
    "secrets": {
        "telegram_token": "123456:tok",
        "api_key": "sk-ant-test",
        "owner_id": "424242",
        "custom_env": {"WEATHER_API_KEY": "wx"},
    },
}


class FakePhala:
    """Route table standing in for the Phala Cloud API."""

    def __init__(self, pubkey_hex):
        self.pubkey_hex = pubkey_hex
        self.remote_status = "starting"
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if request.method == "POST" and path.endswith("/cvms/provision"):
            return httpx.Response(
                200,
                json={"app_id": "app-1", "app_env_encrypt_pubkey": self.pubkey_hex, "compose_hash": "h1"},
            )
        if request.method == "POST" and path.endswith("/cvms"):
            return httpx.Response(200, json={"vm_uuid": "cvm-1", "app_id": "app-1", "status": "starting"})
        if request.method == "GET" and path.endswith("/cvms/cvm-1"):
            return httpx.Response(
                200,
                json={"id": "cvm-1", "status": self.remote_status, "endpoint": "https://jarvis.phala.test"},
            )
        if request.method == "GET" and path.endswith("/cvms/cvm-1/logs"):
            return httpx.Response(200, text="started\nTELEGRAM token=123456:tok\nready")
        if request.method == "POST" and path.endswith("/cvms/cvm-1/restart"):
            return httpx.Response(200, json={"status": "restarting"})
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.fixture
def fake_phala(enclave_pubkey_hex):
    return FakePhala(enclave_pubkey_hex)


@pytest.fixture
def probe_transport():
    return httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ok"}))


@pytest.fixture
def client(settings, fake_phala, probe_transport):
    app = create_app(
        settings,
        phala_transport=httpx.MockTransport(fake_phala),
        probe_transport=probe_transport,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings):
    token = issue_session_token(settings, "tg-1001", name="alice")
    return {"Authorization": f"Bearer {token}"}


class TestHealth:

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readyz(self, client):
        body = client.get("/readyz").json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": True, "provider_configured": True}

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/healthz").headers["x-request-id"]

    def test_metrics(self, client, auth_headers):
        client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert 'clawster_bots{status="starting"}' in response.text

    def test_metrics_zero_emptied_status(self, client, auth_headers):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]
        client.get("/metrics")
        client.delete(f"/bots/{bot_id}", headers=auth_headers)

        text = client.get("/metrics").text

        assert 'clawster_bots{status="starting"} 0.0' in text
        assert 'clawster_bots{status="terminated"} 1.0' in text


class TestAuth:

    def test_requires_session(self, client):
        assert client.get("/bots").status_code == 401

    def test_rejects_forged_token(self, client):
        response = client.get("/bots", headers={"Authorization": "Bearer not-a-real-token"})
        assert response.status_code == 401

    def test_rejects_token_signed_with_other_key(self, client, settings):
        other = settings.model_copy(update={"secret_key": "someone-else"})
        token = issue_session_token(other, "tg-1001")
        assert client.get("/bots", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_accepts_session_cookie(self, client, settings):
        cookie = f"{settings.session_cookie_name}={issue_session_token(settings, 'tg-1001')}"
        assert client.get("/bots", headers={"Cookie": cookie}).status_code == 200

    def test_first_request_commits_new_user(self, client, settings):
        headers = {"Authorization": f"Bearer {issue_session_token(settings, 'tg-5555', name='bob')}"}

        response = client.post("/bots/spawn", json=SPAWN_BODY, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "starting"
        assert client.portal.call(self._load_user, client.app, "tg-5555").display_name == "bob"

    @staticmethod
    async def _load_user(app, external_id):
        async with session_scope(app.state.session_factory) as db:
            return await crud.get_user_by_external_id(db, external_id)


class TestBotRoutes:

    def test_spawn_to_running(self, client, auth_headers, fake_phala):
        response = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers)
        assert response.status_code == 200
        spawned = response.json()
        assert spawned["status"] == "starting"
        assert "checkout_url" not in spawned
        bot_id = spawned["bot_id"]

        fake_phala.remote_status = "running"
        status = client.get(f"/bots/{bot_id}/status", headers=auth_headers).json()
        # Probe transport answers healthy, so the bot goes straight to running
        assert status["status"] == "running"
        assert status["cvm_endpoint"] == "https://jarvis.phala.test"
        assert "telegram_token" not in status
        assert "pending_api_key" not in status

        listed = client.get("/bots", headers=auth_headers).json()
        assert [bot["id"] for bot in listed] == [bot_id]

    def test_duplicate_name_conflict(self, client, auth_headers):
        client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers)
        response = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"]["type"] == "conflict"

    def test_reserved_custom_key_rejected(self, client, auth_headers, fake_phala):
        body = json.loads(json.dumps(SPAWN_BODY))
        body["secrets"]["custom_env"] = {"TELEGRAM_BOT_TOKEN": "evil"}
        response = client.post("/bots/spawn", json=body, headers=auth_headers)
        assert response.status_code == 400
        assert "reserved" in response.json()["error"]["message"]
        assert fake_phala.requests == []

    def test_missing_secret_is_unprocessable(self, client, auth_headers):
        body = {"name": "jarvis", "secrets": {"telegram_token": "t", "owner_id": "1"}}
        assert client.post("/bots/spawn", json=body, headers=auth_headers).status_code == 422

    def test_unknown_bot(self, client, auth_headers):
        response = client.get("/bots/nope/status", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"

    def test_other_users_bot_hidden(self, client, auth_headers, settings):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]
        stranger = {"Authorization": f"Bearer {issue_session_token(settings, 'tg-9999')}"}
        assert client.delete(f"/bots/{bot_id}", headers=stranger).status_code == 404

    def test_terminate_twice(self, client, auth_headers):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]

        first = client.delete(f"/bots/{bot_id}", headers=auth_headers)
        second = client.delete(f"/bots/{bot_id}", headers=auth_headers)

        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "terminated"
        assert client.get("/bots", headers=auth_headers).json() == []

    def test_logs_filtered(self, client, auth_headers):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]

        body = client.get(f"/bots/{bot_id}/logs?tail=50", headers=auth_headers).json()

        assert body == {"logs": "started\nready", "line_count": 2}

    def test_logs_tail_bounds(self, client, auth_headers):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]
        assert client.get(f"/bots/{bot_id}/logs?tail=5000", headers=auth_headers).status_code == 422

    def test_attestation(self, client, auth_headers, enclave_pubkey_hex):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]

        report = client.get(f"/bots/{bot_id}/attestation", headers=auth_headers).json()

        assert report["encryption"]["tee_pubkey"] == enclave_pubkey_hex
        assert report["phala"]["app_id"] == "app-1"

    def test_restart_existing_instance(self, client, auth_headers, fake_phala):
        bot_id = client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()["bot_id"]

        response = client.post(f"/bots/{bot_id}/restart", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "provisioning"
        assert ("POST", "/api/v1/cvms/cvm-1/restart") in fake_phala.requests


class TestBillingRoutes:

    WEBHOOK_SECRET = "whsec_api_test"

    @pytest.fixture
    def billed_client(self, settings, fake_phala, probe_transport, monkeypatch):
        async def ensure_customer(self, user):
            return "cus_1"

        async def create_bot_checkout(self, customer_id, bot_id, size):
            return f"https://checkout.stripe.test/{bot_id}"

        monkeypatch.setattr(StripeBillingGateway, "ensure_customer", ensure_customer)
        monkeypatch.setattr(StripeBillingGateway, "create_bot_checkout", create_bot_checkout)

        billed = settings.model_copy(update={
            "billing_enabled": True,
            "stripe_secret_key": "sk_test",
            "stripe_webhook_secret": self.WEBHOOK_SECRET,
            "stripe_price_id": "price_1",
        })
        app = create_app(
            billed,
            phala_transport=httpx.MockTransport(fake_phala),
            probe_transport=probe_transport,
        )
        with TestClient(app) as test_client:
            yield test_client

    def post_event(self, client, event):
        payload = json.dumps(event)
        timestamp = int(time.time())
        digest = hmac.new(
            self.WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()
        return client.post(
            "/billing/webhook",
            content=payload,
            headers={"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"},
        )

    def test_pay_then_deploy_once(self, billed_client, auth_headers, fake_phala):
        spawned = billed_client.post("/bots/spawn", json=SPAWN_BODY, headers=auth_headers).json()
        assert spawned["status"] == "pending_payment"
        assert spawned["checkout_url"].endswith(spawned["bot_id"])
        assert fake_phala.requests == []

        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"subscription": "sub_1", "metadata": {BOT_ID_METADATA_KEY: spawned["bot_id"]}}},
        }
        first = self.post_event(billed_client, event)
        second = self.post_event(billed_client, event)

        assert first.json() == {"received": True, "action": "deployed"}
        assert second.json() == {"received": True, "action": "duplicate"}
        commits = [r for r in fake_phala.requests if r == ("POST", "/api/v1/cvms")]
        assert len(commits) == 1

    def test_bad_signature_rejected(self, billed_client):
        response = billed_client.post(
            "/billing/webhook",
            content=b'{"type": "checkout.session.completed"}',
            headers={"stripe-signature": "t=1,v1=deadbeef"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "billing_error"

    def test_signed_event_without_type_ignored(self, billed_client):
        response = self.post_event(billed_client, {"id": "evt_untyped", "data": {"object": {}}})
        assert response.json() == {"received": True, "action": "ignored"}

    def test_webhook_disabled_without_billing(self, client):
        assert client.post("/billing/webhook", content=b"{}").status_code == 404

    def test_usage(self, billed_client, auth_headers):
        body = billed_client.get("/billing/usage", headers=auth_headers).json()
        assert body["running_bots"] == 0
        assert body["this_month"] == {"hours": 0.0, "cost": 0.0}
