"""Construction of the bridge and FastAPI dependency access to it."""

from __future__ import annotations

import logging
import threading

from fastapi import FastAPI, Request

from va_bridge.config import Settings, SettingsHolder
from va_bridge.errors import APIError, ConfigError
from va_bridge.sender import DiscordRestSender, FileSource, HttpFileSource, MessageSender
from va_bridge.session import SessionBridge
from va_bridge.store import KVStore, OAuth2StateStore, PendingStore, PostIDStore, SQLiteKVStore, UserStore

logger = logging.getLogger("va_bridge")

_BUILD_LOCK = threading.Lock()


def build_bridge(
    settings: Settings,
    *,
    raw: KVStore | None = None,
    sender: MessageSender | None = None,
    file_source: FileSource | None = None,
) -> SessionBridge:
    """Assemble a SessionBridge over a single raw key/value store."""
    raw = raw or SQLiteKVStore(settings.kv_db_path)
    return SessionBridge(
        SettingsHolder(settings),
        UserStore(raw),
        OAuth2StateStore(raw),
        PostIDStore(raw),
        PendingStore(raw),
        sender or DiscordRestSender(settings.discord_bot_token, timeout=settings.request_timeout_seconds),
        file_source or HttpFileSource(timeout=settings.request_timeout_seconds),
    )


def load_settings() -> Settings:
    """Read and validate settings from the environment."""
    settings = Settings.from_env()
    settings.validate_settings()
    return settings


def get_bridge(request: Request) -> SessionBridge:
    """Return the app's bridge, building it from the environment on first use."""
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is not None:
        return bridge
    with _BUILD_LOCK:
        bridge = getattr(request.app.state, "bridge", None)
        if bridge is None:
            try:
                bridge = build_bridge(load_settings())
            except ConfigError as exc:
                logger.error("Bridge is not configured: %s", exc)  # noqa: TRY400
                raise APIError(500, str(exc)) from exc
            request.app.state.bridge = bridge
    return bridge


def reload_settings(app: FastAPI) -> None:
    """Swap in freshly loaded settings; invalid settings keep the current snapshot."""
    bridge: SessionBridge | None = getattr(app.state, "bridge", None)
    if bridge is None:
        return
    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("Ignoring invalid configuration: %s", exc)  # noqa: TRY400
        return
    bridge.settings_holder.replace(settings)
    logger.info("Configuration reloaded")
