import hashlib
import hmac
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import expired, make_message
from mailsync.config import settings
from mailsync.core.security import get_current_user
from mailsync.api.email.sync_actions import get_sync_engine
from mailsync.main import app


@pytest.fixture
def client(sync_engine, user):
    app.dependency_overrides[get_current_user] = lambda: SimpleNamespace(id=1, email="owner@example.com")
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_ping(client):
    assert client.get("/ping").json() == {"message": "pong"}


def test_initial_sync_route(client, fake_provider, make_connection):
    make_connection()
    fake_provider.full_sync = [{"ready": True, "syncUpdatedToken": "S0"}]
    fake_provider.pages = {("delta", "S0"): {"records": [make_message("m1")], "nextDeltaToken": "D1"}}

    response = client.post("/email/initial-sync", json={"connection_id": "acc-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "delta_token": "D1"}


def test_initial_sync_route_unknown_account(client, make_connection):
    make_connection(connection_id="acc-1")
    response = client.post("/email/initial-sync", json={"connection_id": "someone-elses"})

    assert response.status_code == 404
    assert response.json() == {"detail": {"error": "ACCOUNT_NOT_FOUND"}}


def test_initial_sync_route_readiness_failure(client, fake_provider, make_connection):
    make_connection()
    fake_provider.full_sync = [{"ready": True}]

    response = client.post("/email/initial-sync", json={"connection_id": "acc-1"})

    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "FAILED_TO_SYNC"


def test_incremental_sync_route_token_expired(client, fake_provider, store, make_connection):
    make_connection(delta_token="D1")
    fake_provider.pages = {("delta", "D1"): expired()}

    response = client.post("/email/sync", json={"connection_id": "acc-1"})

    assert response.status_code == 401
    assert response.json() == {"detail": {"error": "TOKEN_EXPIRED"}}
    assert store.get("acc-1").access_token == ""


def test_incremental_sync_route(client, fake_provider, store, make_connection):
    make_connection(delta_token="D1")
    fake_provider.pages = {("delta", "D1"): {"records": [], "nextDeltaToken": "D2"}}

    response = client.post("/email/sync", json={"connection_id": "acc-1"})

    assert response.status_code == 200
    assert store.get("acc-1").next_delta_token == "D2"


def test_connection_status_route(client, make_connection):
    make_connection(access_token="", delta_token="D1")

    body = client.get("/email/connections/acc-1/status").json()

    assert body["needs_reauth"] is True
    assert body["has_delta_token"] is True
    assert body["last_sync_failed_count"] == 0


def test_connection_status_route_asks_token_manager(client, sync_engine, make_connection):
    make_connection()

    with patch.object(sync_engine.token_manager, "needs_reauth", return_value=False) as needs_reauth:
        body = client.get("/email/connections/acc-1/status").json()

    needs_reauth.assert_called_once_with("acc-1")
    assert body["needs_reauth"] is False


def test_send_route(client, fake_provider, make_connection):
    make_connection()
    payload = {
        "connection_id": "acc-1",
        "to": [{"address": "bob@example.com", "name": "Bob"}],
        "subject": "Hello",
        "body": "<p>Hi Bob</p>",
        "attachments": [{"name": "a.txt", "content_type": "text/plain", "content_bytes": "aGk="}],
    }

    response = client.post("/email/send", json=payload)

    assert response.status_code == 200
    assert response.json() == {"id": "sent-message-id"}
    token, message = fake_provider.sent[0]
    assert token == "token-1"
    assert message["from"] == {"name": "Owner", "address": "owner@example.com"}
    assert message["to"] == [{"name": "Bob", "address": "bob@example.com"}]
    assert message["attachments"] == [{"name": "a.txt", "contentType": "text/plain", "content": "aGk="}]


def test_send_route_needs_reauth(client, make_connection):
    make_connection(access_token="", refresh_token=None)
    payload = {"connection_id": "acc-1", "to": [{"address": "bob@example.com"}], "subject": "s", "body": "b"}

    response = client.post("/email/send", json=payload)

    assert response.status_code == 401


def test_webhook_validation_echo(client):
    response = client.post("/email/webhook?validationToken=abc123")
    assert response.status_code == 200
    assert response.text == "abc123"


def test_webhook_triggers_incremental_sync(client, fake_provider, store, make_connection, monkeypatch):
    monkeypatch.setattr(settings, "AURINKO_SIGNING_SECRET", "")
    make_connection(delta_token="D1")
    fake_provider.pages = {("delta", "D1"): {"records": [make_message("m1")], "nextDeltaToken": "D2"}}

    response = client.post("/email/webhook", json={"subscription": 7, "resource": "/email/messages", "accountId": "acc-1"})

    assert response.status_code == 200
    assert store.get("acc-1").next_delta_token == "D2"


def test_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "AURINKO_SIGNING_SECRET", "s3cret")
    response = client.post(
        "/email/webhook",
        content=json.dumps({"accountId": "acc-1"}),
        headers={"X-Aurinko-Request-Timestamp": "1700000000", "X-Aurinko-Signature": "nope"},
    )
    assert response.status_code == 401


def test_webhook_rejects_non_json_body(client, monkeypatch):
    monkeypatch.setattr(settings, "AURINKO_SIGNING_SECRET", "")
    response = client.post(
        "/email/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_webhook_accepts_good_signature(client, fake_provider, make_connection, monkeypatch):
    monkeypatch.setattr(settings, "AURINKO_SIGNING_SECRET", "s3cret")
    make_connection(delta_token="D1")
    fake_provider.pages = {("delta", "D1"): {"records": [], "nextDeltaToken": "D2"}}
    body = json.dumps({"accountId": "acc-1"}).encode()
    signature = hmac.new(b"s3cret", b"v0:1700000000:" + body, hashlib.sha256).hexdigest()

    response = client.post(
        "/email/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Aurinko-Request-Timestamp": "1700000000",
            "X-Aurinko-Signature": signature,
        },
    )
    assert response.status_code == 200


def test_aurinko_callback_creates_connection_and_syncs(client, fake_provider, store, user):
    fake_provider.full_sync = [{"ready": True, "syncUpdatedToken": "S0"}]
    fake_provider.pages = {("delta", "S0"): {"records": [make_message("m1")], "nextDeltaToken": "D1"}}
    token = {"accountId": 555, "accessToken": "fresh-token", "refreshToken": "fresh-refresh", "expiresIn": 3600}

    with patch("mailsync.api.auth.routes.exchange_code_for_token", return_value=token), \
            patch("mailsync.api.auth.routes.get_account_details", return_value={"email": "me@example.com", "name": "Me"}):
        response = client.get("/auth/aurinko/callback", params={"status": "success", "code": "xyz"})

    assert response.status_code == 200
    assert response.json() == {"connection_id": "555", "email_address": "me@example.com"}
    connection = store.get("555")
    assert connection.access_token == "fresh-token"
    assert connection.refresh_token == "fresh-refresh"
    assert connection.next_delta_token == "D1"


def test_aurinko_callback_failure_status(client):
    response = client.get("/auth/aurinko/callback", params={"status": "error"})
    assert response.status_code == 400
