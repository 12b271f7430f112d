"""Tests for the bridge FastAPI app and OAuth2 routes."""

from __future__ import annotations

import json
from datetime import timedelta
from http import HTTPStatus
from urllib.parse import parse_qs, urlparse

import pytest
from bridge_fakes import ENCRYPTION_SECRET, NOW, WEBHOOK_SECRET, Harness, make_settings
from fastapi.testclient import TestClient
from va_bridge import dependencies
from va_bridge.main import NOT_LINKED_MESSAGE, create_app, detect_content_type
from va_bridge.oauth_routes import CONNECT_COOKIE
from va_bridge.security import KIND_CONNECT, TokenCipher, seal_reference
from va_bridge.session import ALREADY_CONNECTED_MESSAGE, DISCONNECT_SUCCESS_MESSAGE, LinkState


def _client(harness: Harness) -> TestClient:
    return TestClient(create_app(harness.bridge), base_url="https://testserver")


def _connect_token(user_id: str) -> str:
    return seal_reference(TokenCipher(ENCRYPTION_SECRET), user_id, timedelta(minutes=15), kind=KIND_CONNECT, now=NOW)


def _webhook_body(user_id: str = "sn-1") -> str:
    return json.dumps({"userId": user_id, "body": [{"uiType": "OutputText", "value": "Hi there"}]})


def test_health(harness: Harness) -> None:
    """Health endpoint returns ok."""
    resp = _client(harness).get("/health")
    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["status"] == "ok"


class TestWebhook:
    def test_missing_or_wrong_secret_is_forbidden(self, harness: Harness) -> None:
        client = _client(harness)
        assert client.post("/nowbot/processResponse", content=_webhook_body()).status_code == HTTPStatus.FORBIDDEN
        resp = client.post("/nowbot/processResponse", params={"secret": "nope"}, content=_webhook_body())
        assert resp.status_code == HTTPStatus.FORBIDDEN
        assert resp.json() == {"message": "Not authorized"}

    def test_plus_sign_survives_query_decoding(self, harness: Harness) -> None:
        """An unescaped "+" arrives as a space and is restored before comparing."""
        harness.link()
        resp = _client(harness).post(f"/nowbot/processResponse?secret={WEBHOOK_SECRET}", content=_webhook_body())
        assert resp.status_code == HTTPStatus.OK
        assert resp.json() == {"status": "OK"}
        assert harness.sender.sent[0][1].text == "Hi there"

    def test_undecodable_body(self, harness: Harness) -> None:
        resp = _client(harness).post("/nowbot/processResponse", params={"secret": WEBHOOK_SECRET}, content="{oops")
        assert resp.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
        assert "message" in resp.json()

    def test_unlinked_remote_user(self, harness: Harness) -> None:
        resp = _client(harness).post(
            "/nowbot/processResponse", params={"secret": WEBHOOK_SECRET}, content=_webhook_body("ghost")
        )
        assert resp.status_code == HTTPStatus.INTERNAL_SERVER_ERROR

    def test_unrecognised_ui_type_is_acknowledged(self, harness: Harness) -> None:
        harness.link()
        body = json.dumps({"userId": "sn-1", "body": [{"uiType": "Hologram", "value": "?"}]})
        resp = _client(harness).post("/nowbot/processResponse", params={"secret": WEBHOOK_SECRET}, content=body)
        assert resp.status_code == HTTPStatus.OK
        assert resp.json() == {"status": "OK"}
        assert harness.sender.sent == []


class TestFileRoute:
    def test_serves_sniffed_bytes(self, harness: Harness) -> None:
        harness.files.files["https://cdn/a"] = (b"\x89PNG\r\n\x1a\nrest", "text/plain")
        token = seal_reference(TokenCipher(ENCRYPTION_SECRET), "https://cdn/a", timedelta(minutes=15), now=NOW)
        resp = _client(harness).get(f"/file/{token}")
        assert resp.status_code == HTTPStatus.OK
        assert resp.headers["content-type"] == "image/png"
        assert resp.content.startswith(b"\x89PNG")

    def test_expired_link(self, harness: Harness) -> None:
        harness.files.files["https://cdn/a"] = (b"x", None)
        token = seal_reference(
            TokenCipher(ENCRYPTION_SECRET), "https://cdn/a", timedelta(minutes=15), now=NOW - timedelta(hours=1)
        )
        assert _client(harness).get(f"/file/{token}").status_code == HTTPStatus.NOT_FOUND

    def test_undecodable_link(self, harness: Harness) -> None:
        assert _client(harness).get("/file/abc").status_code == HTTPStatus.BAD_REQUEST

    def test_tampered_link(self, harness: Harness) -> None:
        forged = TokenCipher.encode(b"\x00" * 40)
        assert _client(harness).get(f"/file/{forged}").status_code == HTTPStatus.INTERNAL_SERVER_ERROR

    def test_connect_token_is_not_a_file_link(self, harness: Harness) -> None:
        resp = _client(harness).get(f"/file/{_connect_token('u1')}")
        assert resp.status_code == HTTPStatus.INTERNAL_SERVER_ERROR


class TestEventsAndActions:
    def test_message_from_unlinked_user(self, harness: Harness) -> None:
        payload = {"provider": "discord", "channel_id": "c1", "user_id": "u1", "content": "hi", "message_id": "m1"}
        resp = _client(harness).post("/events/message", json=payload)
        assert resp.status_code == HTTPStatus.OK
        assert "oauth2/connect?token=" in resp.json()["messages"][0]["text"]

    @pytest.mark.parametrize("path", ["/actions/options", "/actions/disconnect", "/actions/date_time"])
    def test_actions_require_user_header(self, harness: Harness, path: str) -> None:
        body = {"value": "v", "confirmed": True, "ui_type": "Date"}
        resp = _client(harness).post(path, json=body)
        assert resp.status_code == HTTPStatus.UNAUTHORIZED
        assert resp.json() == {"message": "Not authorized"}

    def test_option_from_unlinked_user(self, harness: Harness) -> None:
        resp = _client(harness).post("/actions/options", json={"value": "v"}, headers={"X-User-ID": "u1"})
        assert resp.status_code == HTTPStatus.NOT_FOUND
        assert resp.json()["message"] == NOT_LINKED_MESSAGE

    def test_option_selection(self, harness: Harness) -> None:
        harness.link()
        resp = _client(harness).post(
            "/actions/options", json={"value": "v1", "label": "First"}, headers={"X-User-ID": "u1"}
        )
        assert resp.json()["text"] == "You selected: First"

    def test_disconnect_button(self, harness: Harness) -> None:
        harness.link()
        resp = _client(harness).post("/actions/disconnect", json={"confirmed": True}, headers={"X-User-ID": "u1"})
        assert resp.json()["text"] == DISCONNECT_SUCCESS_MESSAGE

    def test_date_time_validation_errors(self, harness: Harness) -> None:
        harness.link()
        resp = _client(harness).post(
            "/actions/date_time",
            json={"ui_type": "Date", "date": "tomorrow"},
            headers={"X-User-ID": "u1"},
        )
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["errors"] == {"date": "Please enter a valid date"}

    def test_connect_action(self, harness: Harness) -> None:
        client = _client(harness)
        fresh = client.post("/actions/connect", headers={"X-User-ID": "u1"}).json()
        assert fresh["url"].startswith("https://bridge.example.com/oauth2/connect?token=")
        harness.link()
        linked = client.post("/actions/connect", headers={"X-User-ID": "u1"}).json()
        assert linked == {"text": ALREADY_CONNECTED_MESSAGE, "url": None}


class TestOAuthRoutes:
    def _connect(self, client: TestClient, user_id: str) -> str:
        resp = client.get("/oauth2/connect", params={"token": _connect_token(user_id)}, follow_redirects=False)
        assert resp.status_code == HTTPStatus.FOUND
        assert CONNECT_COOKIE in resp.cookies
        return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]

    def test_full_link_flow(self, harness: Harness) -> None:
        client = _client(harness)
        state = self._connect(client, "u1")
        resp = client.get("/oauth2/complete", params={"code": "abc", "state": state})
        assert resp.status_code == HTTPStatus.OK
        assert "Completed connecting to ServiceNow. Please close this window." in resp.text
        assert harness.bridge.link_state("u1") == LinkState.LINKED
        assert ("start_conversation", "sn-1") in harness.calls

    def test_connect_requires_token(self, harness: Harness) -> None:
        assert _client(harness).get("/oauth2/connect").status_code == HTTPStatus.BAD_REQUEST

    def test_connect_rejects_forged_token(self, harness: Harness) -> None:
        forged = TokenCipher.encode(b"\x01" * 40)
        resp = _client(harness).get("/oauth2/connect", params={"token": forged}, follow_redirects=False)
        assert resp.status_code == HTTPStatus.BAD_REQUEST

    def test_connect_when_already_linked(self, harness: Harness) -> None:
        harness.link()
        resp = _client(harness).get("/oauth2/connect", params={"token": _connect_token("u1")}, follow_redirects=False)
        assert resp.status_code == HTTPStatus.BAD_REQUEST
        assert resp.json()["message"] == ALREADY_CONNECTED_MESSAGE

    def test_complete_without_cookie(self, harness: Harness) -> None:
        state = parse_qs(urlparse(harness.bridge.start_oauth("u1")).query)["state"][0]
        resp = _client(harness).get("/oauth2/complete", params={"code": "abc", "state": state})
        assert resp.status_code == HTTPStatus.UNAUTHORIZED

    def test_complete_missing_code(self, harness: Harness) -> None:
        assert _client(harness).get("/oauth2/complete", params={"state": "s"}).status_code == HTTPStatus.BAD_REQUEST

    def test_complete_by_another_user_is_forbidden(self, harness: Harness) -> None:
        victim_state = parse_qs(urlparse(harness.bridge.start_oauth("u1")).query)["state"][0]
        client = _client(harness)
        self._connect(client, "u2")
        resp = client.get("/oauth2/complete", params={"code": "abc", "state": victim_state})
        assert resp.status_code == HTTPStatus.FORBIDDEN
        assert harness.bridge.link_state("u1") != LinkState.LINKED

    def test_complete_with_unknown_state(self, harness: Harness) -> None:
        client = _client(harness)
        self._connect(client, "u1")
        resp = client.get("/oauth2/complete", params={"code": "abc", "state": "deadbeef_u1"})
        assert resp.status_code == HTTPStatus.BAD_REQUEST


def test_detect_content_type() -> None:
    assert detect_content_type(b"%PDF-1.7") == "application/pdf"
    assert detect_content_type(b"RIFF\x00\x00\x00\x00WEBPVP8") == "image/webp"
    assert detect_content_type(b"plain", "text/plain") == "text/plain"
    assert detect_content_type(b"plain") == "application/octet-stream"


def test_reload_settings_swaps_snapshot(harness: Harness, monkeypatch: pytest.MonkeyPatch) -> None:
    """A reload replaces the settings the bridge reads."""
    app = create_app(harness.bridge)
    monkeypatch.setattr(dependencies, "load_settings", lambda: make_settings(webhook_secret="rotated"))
    dependencies.reload_settings(app)
    assert harness.bridge.settings.webhook_secret == "rotated"


def test_reload_settings_rejects_unusable_key(harness: Harness, monkeypatch: pytest.MonkeyPatch) -> None:
    """A secret AES cannot use is refused, so linked users survive the reload."""
    harness.link()
    app = create_app(harness.bridge)
    environment = {
        "SERVICENOW_URL": "https://instance.service-now.com",
        "SERVICENOW_OAUTH_CLIENT_ID": "client",
        "SERVICENOW_OAUTH_CLIENT_SECRET": "secret",
        "ENCRYPTION_SECRET": "short-secret",
        "WEBHOOK_SECRET": WEBHOOK_SECRET,
        "PUBLIC_BASE_URL": "https://bridge.example.com",
    }
    for name, value in environment.items():
        monkeypatch.setenv(name, value)

    dependencies.reload_settings(app)

    assert harness.bridge.settings.encryption_secret == ENCRYPTION_SECRET
    assert harness.users.load_user("u1").remote_id == "sn-1"
    payload = {"provider": "discord", "channel_id": "dm-u1", "user_id": "u1", "content": "hi", "message_id": "m1"}
    resp = _client(harness).post("/events/message", json=payload)
    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["messages"] == []
