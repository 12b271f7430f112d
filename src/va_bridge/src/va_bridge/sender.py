"""Message delivery and file retrieval capabilities.

The bridge never owns a gateway connection. Webhook replies are pushed through
Discord's REST API with ``requests``; attachments forwarded to the agent are
fetched back from wherever the chat platform stored them.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any

import requests

from va_bridge.errors import NotFoundError
from va_bridge.render import Action, Card, OutgoingMessage, RemoteFile
from virtual_agent_api import TransportError

logger = logging.getLogger("va_bridge.sender")

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_MESSAGE_LIMIT = 2000
BUTTONS_PER_ROW = 5
MAX_RATE_LIMIT_WAIT_SECONDS = 5.0

_ACTION_ROW = 1
_BUTTON = 2
_STRING_SELECT = 3
_BUTTON_STYLES = {"primary": 1, "secondary": 2, "success": 3, "danger": 4}
_BLANK = "\u200b"
_MARKDOWN_LINK = re.compile(r"^\[(?P<label>.*)\]\((?P<url>[^)]*)\)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class MessageSender(ABC):
    """Posts bridge messages to chat users."""

    @abstractmethod
    def direct_message(self, user_id: str, message: OutgoingMessage) -> str:
        """Send ``message`` to the user's DM channel and return the message id."""
        raise NotImplementedError

    @abstractmethod
    def ephemeral_message(self, user_id: str, channel_id: str | None, message: OutgoingMessage) -> str:
        """Send a message only ``user_id`` sees in ``channel_id``.

        A DM channel is already private, so a normal message there qualifies.
        """
        raise NotImplementedError

    @abstractmethod
    def strip_actions(self, channel_id: str, message_id: str) -> None:
        """Remove the interactive controls from a previously sent message."""
        raise NotImplementedError

    @abstractmethod
    def dm_channel(self, user_id: str) -> str:
        """Return the id of the bot's DM channel with ``user_id``."""
        raise NotImplementedError


class FileSource(ABC):
    """Returns the bytes behind a file id referenced by a download link."""

    @abstractmethod
    def fetch(self, file_id: str) -> tuple[bytes, str | None]:
        """Return ``(data, content_type)``; NotFoundError when the file is gone."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Discord REST implementation
# ---------------------------------------------------------------------------


class DiscordRestSender(MessageSender):
    """MessageSender backed by the Discord REST API (v10)."""

    def __init__(
        self,
        bot_token: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        api_base: str = DISCORD_API_BASE,
    ) -> None:
        """Create a sender authenticated as the bot."""
        self._timeout = timeout
        self._api_base = api_base.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bot {bot_token}"})
        self._dm_channels: dict[str, str] = {}
        self._lock = threading.Lock()

    def direct_message(self, user_id: str, message: OutgoingMessage) -> str:
        """Post ``message`` in the bot's DM channel with ``user_id``."""
        return self.post(self.dm_channel(user_id), message)

    def ephemeral_message(self, user_id: str, channel_id: str | None, message: OutgoingMessage) -> str:
        """Post in ``channel_id`` when given, else in the DM channel."""
        return self.post(channel_id or self.dm_channel(user_id), message)

    def strip_actions(self, channel_id: str, message_id: str) -> None:
        """Clear the components of a sent message."""
        self._request("PATCH", f"/channels/{channel_id}/messages/{message_id}", json_body={"components": []})

    def dm_channel(self, user_id: str) -> str:
        """Open (or reuse) the DM channel with ``user_id``."""
        with self._lock:
            cached = self._dm_channels.get(user_id)
        if cached:
            return cached
        payload = self._request("POST", "/users/@me/channels", json_body={"recipient_id": user_id})
        channel_id = str(payload["id"])
        with self._lock:
            self._dm_channels[user_id] = channel_id
        return channel_id

    def post(self, channel_id: str, message: OutgoingMessage) -> str:
        """Post ``message`` to ``channel_id``; returns the created message id."""
        body = message_payload(message)
        path = f"/channels/{channel_id}/messages"
        if message.file is not None:
            upload = self._download(message.file)
            if upload is not None:
                with_file = {**body, "attachments": [{"id": 0, "filename": upload[0]}]}
                files = {
                    "payload_json": (None, json.dumps(with_file), "application/json"),
                    "files[0]": upload,
                }
                try:
                    payload = self._request("POST", path, files=files)
                    return str(payload["id"])
                except TransportError:
                    logger.exception("Couldn't upload %s to channel %s", message.file.filename, channel_id)
            if not body.get("content"):
                logger.warning("No alt text to fall back on for %s", message.file.url)
                return ""
        payload = self._request("POST", path, json_body=body)
        return str(payload["id"])

    def _download(self, remote: RemoteFile) -> tuple[str, bytes, str] | None:
        try:
            response = requests.get(remote.url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException:
            logger.exception("Error in getting file data from %s", remote.url)
            return None
        content_type = response.headers.get("Content-Type", "") or "application/octet-stream"
        return with_extension(remote.filename, content_type), response.content, content_type

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._api_base}{path}"
        for attempt in range(2):
            try:
                response = self._session.request(method, url, json=json_body, files=files, timeout=self._timeout)
            except requests.RequestException as exc:
                msg = f"Discord {method} {path} failed: {exc}"
                raise TransportError(msg) from exc
            if response.status_code == HTTPStatus.TOO_MANY_REQUESTS and attempt == 0:
                time.sleep(min(_retry_after(response), MAX_RATE_LIMIT_WAIT_SECONDS))
                continue
            break
        if response.status_code == HTTPStatus.NO_CONTENT:
            return {}
        if not response.ok:
            msg = f"Discord {method} {path} returned {response.status_code}: {response.text[:200]}"
            raise TransportError(msg, status_code=response.status_code)
        try:
            return response.json()
        except ValueError:
            return {}


def _retry_after(response: requests.Response) -> float:
    try:
        return float(response.json().get("retry_after", 1.0))
    except (ValueError, AttributeError):
        return 1.0


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def with_extension(filename: str, content_type: str) -> str:
    """Give ``filename`` an extension taken from ``content_type`` when it lacks one."""
    media = content_type.split(";")[0].strip()
    if "." in filename or media.count("/") != 1:
        return filename
    return f"{filename}.{media.split('/')[1]}"


def message_payload(message: OutgoingMessage) -> dict[str, Any]:
    """Build the Discord create-message body for ``message``."""
    pretexts = [card.pretext for card in message.cards if card.pretext]
    content = "\n".join([*pretexts, message.text] if message.text else pretexts)
    body: dict[str, Any] = {"content": content[:DISCORD_MESSAGE_LIMIT]}
    embeds = [embed for embed in (card_embed(card) for card in message.cards) if embed]
    if embeds:
        body["embeds"] = embeds
    if message.actions:
        body["components"] = action_rows(message.actions)
    return body


def card_embed(card: Card) -> dict[str, Any]:
    """Convert a card into a Discord embed; empty cards give an empty dict."""
    embed: dict[str, Any] = {}
    if card.title:
        match = _MARKDOWN_LINK.match(card.title)
        if match:
            embed["title"] = match.group("label")
            embed["url"] = match.group("url")
        else:
            embed["title"] = card.title
    if card.text:
        embed["description"] = card.text
    if card.image_url:
        embed["image"] = {"url": card.image_url}
    if card.fields:
        embed["fields"] = [{"name": field.title or _BLANK, "value": field.value or _BLANK} for field in card.fields]
    if embed and card.color is not None:
        embed["color"] = card.color
    return embed


def action_rows(actions: list[Action]) -> list[dict[str, Any]]:
    """Lay out actions as Discord action rows: one select per row, buttons five to a row."""
    rows: list[dict[str, Any]] = []
    buttons: list[dict[str, Any]] = []
    for action in actions:
        if action.kind == "select":
            select = {
                "type": _STRING_SELECT,
                "custom_id": action.custom_id,
                "placeholder": action.label,
                "options": [{"label": option.label, "value": option.value} for option in action.options],
            }
            rows.append({"type": _ACTION_ROW, "components": [select]})
            continue
        buttons.append(
            {
                "type": _BUTTON,
                "style": _BUTTON_STYLES[action.style],
                "label": action.label,
                "custom_id": action.custom_id,
            }
        )
    for start in range(0, len(buttons), BUTTONS_PER_ROW):
        rows.append({"type": _ACTION_ROW, "components": buttons[start : start + BUTTONS_PER_ROW]})
    return rows


# ---------------------------------------------------------------------------
# File source
# ---------------------------------------------------------------------------


class HttpFileSource(FileSource):
    """FileSource for ids that are the attachment URLs Discord hands out."""

    def __init__(self, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        """Create a source that downloads with ``requests``."""
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, file_id: str) -> tuple[bytes, str | None]:
        """Download the attachment."""
        try:
            response = self._session.get(file_id, timeout=self._timeout)
        except requests.RequestException as exc:
            msg = f"failed to download attachment: {exc}"
            raise TransportError(msg) from exc
        if response.status_code in (HTTPStatus.NOT_FOUND, HTTPStatus.FORBIDDEN, HTTPStatus.GONE):
            msg = "file not found"
            raise NotFoundError(msg)
        if not response.ok:
            msg = f"attachment download returned {response.status_code}"
            raise TransportError(msg, status_code=response.status_code)
        return response.content, response.headers.get("Content-Type")
