"""Integration tests for bridge wiring, storage and health endpoints."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

import pytest
import va_bridge.main as app_module
from fastapi.testclient import TestClient
from servicenow_client_impl import ServiceNowClient, ServiceNowOAuth
from va_bridge.config import Settings
from va_bridge.dependencies import build_bridge
from va_bridge.models import IncomingMessage
from va_bridge.render import OutgoingMessage
from va_bridge.sender import MessageSender
from va_bridge.session import LinkState
from va_bridge.store import SQLiteKVStore

import virtual_agent_api
from virtual_agent_api import ClientConfig

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.integration


class RecordingSender(MessageSender):
    def __init__(self) -> None:
        self.sent: list[tuple[str, OutgoingMessage]] = []

    def direct_message(self, user_id: str, message: OutgoingMessage) -> str:
        self.sent.append((user_id, message))
        return str(len(self.sent))

    def ephemeral_message(self, user_id: str, channel_id: str | None, message: OutgoingMessage) -> str:
        return self.direct_message(user_id, message)

    def strip_actions(self, channel_id: str, message_id: str) -> None:
        return None

    def dm_channel(self, user_id: str) -> str:
        return f"dm-{user_id}"


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        servicenow_url="https://instance.service-now.com",
        servicenow_oauth_client_id="client",
        servicenow_oauth_client_secret="secret",  # noqa: S106
        encryption_secret="0123456789abcdef0123456789abcdef",  # noqa: S106
        webhook_secret="hook",  # noqa: S106
        public_base_url="https://bridge.example.com",
        kv_db_path=str(tmp_path / "kv.db"),
    )


@pytest.mark.circleci
def test_bridge_health_endpoint() -> None:
    """Health endpoint responds OK without any configuration."""
    client = TestClient(app_module.app)
    resp = client.get("/health")
    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["status"] == "ok"


@pytest.mark.circleci
def test_unconfigured_bridge_reports_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Routes needing the bridge fail cleanly when settings are missing."""
    for name in ("SERVICENOW_URL", "SERVICENOW_OAUTH_CLIENT_ID", "ENCRYPTION_SECRET"):
        monkeypatch.setenv(name, "")
    client = TestClient(app_module.create_app())
    resp = client.post("/nowbot/processResponse", params={"secret": "x"}, content=b"{}")
    assert resp.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
    assert "should not be empty" in resp.json()["message"]


@pytest.mark.circleci
def test_servicenow_implementation_is_registered() -> None:
    """Importing the app registers the ServiceNow client factories."""
    config = ClientConfig(
        base_url="https://instance.service-now.com",
        client_id="client",
        client_secret="secret",  # noqa: S106
        redirect_url="https://bridge.example.com/oauth2/complete",
    )
    assert isinstance(virtual_agent_api.get_oauth(config), ServiceNowOAuth)
    assert isinstance(virtual_agent_api.get_client(config, {"access_token": "t"}), ServiceNowClient)


@pytest.mark.circleci
def test_link_pending_state_survives_restart(tmp_path: Path) -> None:
    """A bridge rebuilt over the same database sees earlier state."""
    settings = _settings(tmp_path)
    bridge = build_bridge(settings, sender=RecordingSender())

    replies = bridge.handle_chat_message(IncomingMessage(channel_id="c1", user_id="u1", content="hello"))
    assert "oauth2/connect?token=" in replies[0].text

    auth_url = bridge.start_oauth("u1")
    query = parse_qs(urlparse(auth_url).query)
    assert auth_url.startswith("https://instance.service-now.com/oauth_auth.do")
    assert query["redirect_uri"] == ["https://bridge.example.com/oauth2/complete"]
    assert query["state"][0].endswith("_u1")

    restarted = build_bridge(settings, raw=SQLiteKVStore(settings.kv_db_path), sender=RecordingSender())
    assert restarted.link_state("u1") == LinkState.LINK_PENDING
    assert restarted.link_state("u2") == LinkState.UNLINKED
