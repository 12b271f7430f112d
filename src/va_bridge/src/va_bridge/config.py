"""Bridge configuration.

Settings are an immutable snapshot. Code that needs the current values asks a
:class:`SettingsHolder` for them; a reload swaps the whole snapshot so readers
never observe a half-updated configuration.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

from va_bridge.errors import ConfigError
from va_bridge.security import VALID_KEY_SIZES
from virtual_agent_api import ClientConfig

DEFAULT_KV_DB = "va_bridge.db"
DEFAULT_ATTACHMENT_LINK_EXPIRY_MINUTES = 15
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

PATH_OAUTH2_COMPLETE = "/oauth2/complete"

EMPTY_SERVICENOW_URL = "serviceNow URL should not be empty"
EMPTY_CLIENT_ID = "serviceNow OAuth clientID should not be empty"
EMPTY_CLIENT_SECRET = "serviceNow OAuth clientSecret should not be empty"  # noqa: S105
EMPTY_ENCRYPTION_SECRET = "encryption secret should not be empty"  # noqa: S105
EMPTY_WEBHOOK_SECRET = "webhook secret should not be empty"  # noqa: S105
EMPTY_PUBLIC_BASE_URL = "public base URL should not be empty"
INVALID_EXPIRY = "attachment link expiration time should be greater than zero"
INVALID_ENCRYPTION_SECRET = "encryption secret must be 16, 24 or 32 bytes"  # noqa: S105


class Settings(BaseModel):
    """Immutable bridge configuration snapshot."""

    model_config = ConfigDict(frozen=True)

    servicenow_url: str = ""
    servicenow_oauth_client_id: str = ""
    servicenow_oauth_client_secret: str = ""
    encryption_secret: str = ""
    webhook_secret: str = ""
    public_base_url: str = ""
    discord_bot_token: str = ""
    kv_db_path: str = DEFAULT_KV_DB
    attachment_link_expiry_minutes: int = DEFAULT_ATTACHMENT_LINK_EXPIRY_MINUTES
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from the environment (and ``.env``), sanitized."""
        load_dotenv()
        env = os.environ
        return cls(
            servicenow_url=env.get("SERVICENOW_URL", ""),
            servicenow_oauth_client_id=env.get("SERVICENOW_OAUTH_CLIENT_ID", ""),
            servicenow_oauth_client_secret=env.get("SERVICENOW_OAUTH_CLIENT_SECRET", ""),
            encryption_secret=env.get("ENCRYPTION_SECRET", ""),
            webhook_secret=env.get("WEBHOOK_SECRET", ""),
            public_base_url=env.get("PUBLIC_BASE_URL", ""),
            discord_bot_token=env.get("DISCORD_BOT_TOKEN", ""),
            kv_db_path=env.get("BRIDGE_KV_DB", DEFAULT_KV_DB),
            attachment_link_expiry_minutes=int(
                env.get("ATTACHMENT_LINK_EXPIRY_MINUTES", DEFAULT_ATTACHMENT_LINK_EXPIRY_MINUTES)
            ),
            request_timeout_seconds=float(env.get("REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
        ).sanitize()

    def sanitize(self) -> Settings:
        """Return a copy with whitespace and trailing slashes trimmed."""
        return self.model_copy(
            update={
                "servicenow_url": self.servicenow_url.strip().rstrip("/"),
                "servicenow_oauth_client_id": self.servicenow_oauth_client_id.strip(),
                "servicenow_oauth_client_secret": self.servicenow_oauth_client_secret.strip(),
                "public_base_url": self.public_base_url.strip().rstrip("/"),
            }
        )

    def validate_settings(self) -> None:
        """Raise ConfigError when a required value is missing or unusable."""
        checks = (
            (self.servicenow_url, EMPTY_SERVICENOW_URL),
            (self.servicenow_oauth_client_id, EMPTY_CLIENT_ID),
            (self.servicenow_oauth_client_secret, EMPTY_CLIENT_SECRET),
            (self.encryption_secret, EMPTY_ENCRYPTION_SECRET),
            (self.webhook_secret, EMPTY_WEBHOOK_SECRET),
            (self.public_base_url, EMPTY_PUBLIC_BASE_URL),
        )
        for value, message in checks:
            if not value:
                raise ConfigError(message)
        if len(self.encryption_secret.encode("utf-8")) not in VALID_KEY_SIZES:
            raise ConfigError(INVALID_ENCRYPTION_SECRET)
        if self.attachment_link_expiry_minutes <= 0:
            raise ConfigError(INVALID_EXPIRY)

    def client_config(self) -> ClientConfig:
        """Return the remote-agent connection settings derived from this snapshot."""
        return ClientConfig(
            base_url=self.servicenow_url,
            client_id=self.servicenow_oauth_client_id,
            client_secret=self.servicenow_oauth_client_secret,
            redirect_url=f"{self.public_base_url}{PATH_OAUTH2_COMPLETE}",
            timeout_seconds=self.request_timeout_seconds,
        )


SettingsListener = Callable[[Settings, Settings], None]


class SettingsHolder:
    """Single atomic reference to the current :class:`Settings` snapshot."""

    def __init__(self, settings: Settings) -> None:
        """Start with ``settings`` as the current snapshot."""
        self._lock = threading.Lock()
        self._settings = settings
        self._listeners: list[SettingsListener] = []

    def get(self) -> Settings:
        """Return the current snapshot."""
        return self._settings

    def subscribe(self, listener: SettingsListener) -> None:
        """Call ``listener(old, new)`` after every replacement."""
        self._listeners.append(listener)

    def replace(self, settings: Settings) -> Settings:
        """Swap in a new snapshot and notify listeners; returns the previous one."""
        with self._lock:
            previous = self._settings
            self._settings = settings
        for listener in self._listeners:
            listener(previous, settings)
        return previous
