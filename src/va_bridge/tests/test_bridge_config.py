"""Tests for bridge settings and the settings holder."""

from __future__ import annotations

import pytest
from bridge_fakes import make_settings
from va_bridge.config import (
    EMPTY_ENCRYPTION_SECRET,
    EMPTY_SERVICENOW_URL,
    INVALID_ENCRYPTION_SECRET,
    INVALID_EXPIRY,
    Settings,
    SettingsHolder,
)
from va_bridge.errors import ConfigError


def test_from_env_reads_and_sanitizes(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment values are trimmed and trailing slashes removed."""
    monkeypatch.setenv("SERVICENOW_URL", "  https://instance.service-now.com/ ")
    monkeypatch.setenv("SERVICENOW_OAUTH_CLIENT_ID", " client ")
    monkeypatch.setenv("SERVICENOW_OAUTH_CLIENT_SECRET", "secret")
    monkeypatch.setenv("ENCRYPTION_SECRET", "0123456789abcdef")
    monkeypatch.setenv("WEBHOOK_SECRET", "hook")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://bridge.example.com//")
    monkeypatch.setenv("ATTACHMENT_LINK_EXPIRY_MINUTES", "5")
    monkeypatch.setenv("BRIDGE_KV_DB", "/tmp/bridge.db")  # noqa: S108

    settings = Settings.from_env()

    assert settings.servicenow_url == "https://instance.service-now.com"
    assert settings.servicenow_oauth_client_id == "client"
    assert settings.public_base_url == "https://bridge.example.com"
    assert settings.attachment_link_expiry_minutes == 5  # noqa: PLR2004
    assert settings.kv_db_path == "/tmp/bridge.db"  # noqa: S108


def test_validate_reports_first_missing_value() -> None:
    """Validation stops at the first missing setting."""
    with pytest.raises(ConfigError, match=EMPTY_SERVICENOW_URL):
        make_settings(servicenow_url="", encryption_secret="").validate_settings()
    with pytest.raises(ConfigError, match=EMPTY_ENCRYPTION_SECRET):
        make_settings(encryption_secret="").validate_settings()


@pytest.mark.parametrize("secret", ["short-secret", "0123456789abcdef0", "\u00e9" * 9])
def test_validate_rejects_unusable_key_length(secret: str) -> None:
    """The encryption secret must be an AES key size once encoded."""
    with pytest.raises(ConfigError, match=INVALID_ENCRYPTION_SECRET):
        make_settings(encryption_secret=secret).validate_settings()


def test_validate_rejects_non_positive_expiry() -> None:
    """Attachment links must live for at least a minute."""
    with pytest.raises(ConfigError, match=INVALID_EXPIRY):
        make_settings(attachment_link_expiry_minutes=0).validate_settings()


def test_client_config_points_back_at_bridge() -> None:
    """The OAuth2 redirect is the bridge's completion route."""
    config = make_settings().client_config()
    assert config.base_url == "https://instance.service-now.com"
    assert config.redirect_url == "https://bridge.example.com/oauth2/complete"


def test_settings_are_frozen() -> None:
    """A snapshot cannot be mutated in place."""
    settings = make_settings()
    with pytest.raises(ValueError):  # noqa: PT011
        settings.webhook_secret = "other"  # type: ignore[misc]


def test_holder_replace_notifies_listeners() -> None:
    """Replacing the snapshot returns the old one and tells subscribers."""
    first = make_settings()
    second = make_settings(webhook_secret="rotated")
    holder = SettingsHolder(first)
    seen: list[tuple[str, str]] = []
    holder.subscribe(lambda old, new: seen.append((old.webhook_secret, new.webhook_secret)))

    previous = holder.replace(second)

    assert previous is first
    assert holder.get() is second
    assert seen == [(first.webhook_secret, "rotated")]
