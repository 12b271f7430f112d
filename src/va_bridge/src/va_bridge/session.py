"""Session orchestration between Discord users and the ServiceNow Virtual Agent.

``SessionBridge`` owns no transport and no global state. Every collaborator is
handed in at construction, and configuration is read from a
:class:`~va_bridge.config.SettingsHolder` snapshot per operation.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import virtual_agent_api
from va_bridge.config import Settings, SettingsHolder
from va_bridge.errors import (
    GENERIC_ERROR_MESSAGE,
    AlreadyConnectedError,
    AuthError,
    AuthorizationMismatchError,
    CryptoError,
    NotFoundError,
)
from va_bridge.models import ActionReply, IncomingAttachment, IncomingMessage
from va_bridge.render import (
    DEFAULT_ACTION_BASE,
    Action,
    BatchReport,
    Card,
    OutgoingMessage,
    disconnect_custom_id,
    render_event,
)
from va_bridge.security import KIND_CONNECT, KIND_FILE, TokenCipher, open_reference, seal_reference
from va_bridge.sender import FileSource, MessageSender
from va_bridge.store import (
    OAUTH2_STATE_TTL_SECONDS,
    OAuth2StateStore,
    PendingStore,
    PostIDs,
    PostIDStore,
    SessionRecord,
    UserStore,
)
from virtual_agent_api import Client, ClientConfig, MessageAttachment, OAuthProvider, TransportError, decode_event

logger = logging.getLogger("va_bridge.session")

CONNECT_SUCCESS_MESSAGE = (
    "Thanks for linking your ServiceNow account!\nYour ServiceNow account (*{}*) has been connected to Discord."
)
WELCOME_MESSAGE = (
    "Welcome to the Discord ServiceNow Virtual Agent.\n"
    "I'm here to help you. Let's start by linking your ServiceNow account.\n[Link to ServiceNow]({})"
)
DISCONNECT_CONFIRMATION_MESSAGE = "Are you sure you want to disconnect your ServiceNow account?"
DISCONNECT_REJECTED_MESSAGE = "You're still connected to your ServiceNow account."
DISCONNECT_SUCCESS_MESSAGE = "Successfully disconnected your ServiceNow account."
ALREADY_DISCONNECTED_MESSAGE = "You're already disconnected from your ServiceNow account."
ALREADY_CONNECTED_MESSAGE = "You're already connected to ServiceNow."
MULTIPLE_ATTACHMENTS_MESSAGE = "Cannot send more than one file attachment at a time."
DATE_VALIDATION_ERROR = "Please enter a valid date"
TIME_VALIDATION_ERROR = "Please enter a valid time"

DISCONNECT_KEYWORD = "disconnect"
AFFIRMATIVE_REPLIES = frozenset({"yes", "y"})
DISCONNECT_COLOR = 0xFF0000

MARKER_LINK_PENDING = "link"
MARKER_DISCONNECT = "disconnect"
PENDING_TTL_SECONDS = OAUTH2_STATE_TTL_SECONDS
CONNECT_LINK_TTL = timedelta(minutes=15)
STATE_DELIMITER = "_"

DATE_FIELD = "date"
TIME_FIELD = "time"
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_PATTERN = re.compile(r"^\d{2}:\d{2}$")

ClientFactory = Callable[[ClientConfig, dict[str, Any], Callable[[dict[str, Any]], None]], Client]
OAuthFactory = Callable[[ClientConfig], OAuthProvider]


class LinkState(str, Enum):
    """Where a Discord user stands in the linking lifecycle."""

    UNLINKED = "unlinked"
    LINK_PENDING = "link_pending"
    LINKED = "linked"
    DISCONNECT_CONFIRMING = "disconnect_confirming"


def _default_client_factory(
    config: ClientConfig,
    token: dict[str, Any],
    token_updater: Callable[[dict[str, Any]], None],
) -> Client:
    return virtual_agent_api.get_client(config, token, token_updater)


def _default_oauth_factory(config: ClientConfig) -> OAuthProvider:
    return virtual_agent_api.get_oauth(config)


class SessionBridge:
    """Links Discord users to ServiceNow and relays conversations both ways."""

    def __init__(  # noqa: PLR0913
        self,
        settings: SettingsHolder,
        users: UserStore,
        states: OAuth2StateStore,
        post_ids: PostIDStore,
        pending: PendingStore,
        sender: MessageSender,
        file_source: FileSource,
        *,
        cipher_factory: Callable[[str], TokenCipher] = TokenCipher,
        client_factory: ClientFactory = _default_client_factory,
        oauth_factory: OAuthFactory = _default_oauth_factory,
        clock: Callable[[], datetime] | None = None,
        action_base: str = DEFAULT_ACTION_BASE,
    ) -> None:
        """Wire the bridge and subscribe it to settings changes."""
        self._settings = settings
        self._users = users
        self._states = states
        self._post_ids = post_ids
        self._pending = pending
        self._sender = sender
        self._file_source = file_source
        self._cipher_factory = cipher_factory
        self._client_factory = client_factory
        self._oauth_factory = oauth_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._action_base = action_base
        settings.subscribe(self.on_settings_changed)

    @property
    def settings(self) -> Settings:
        """Current configuration snapshot."""
        return self._settings.get()

    @property
    def settings_holder(self) -> SettingsHolder:
        return self._settings

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    def link_state(self, local_id: str) -> LinkState:
        """Return the current lifecycle state of ``local_id``."""
        marker = self._pending.get(local_id)
        try:
            self._users.load_user(local_id)
        except NotFoundError:
            return LinkState.LINK_PENDING if marker == MARKER_LINK_PENDING else LinkState.UNLINKED
        return LinkState.DISCONNECT_CONFIRMING if marker == MARKER_DISCONNECT else LinkState.LINKED

    # -----------------------------------------------------------------------
    # Chat messages
    # -----------------------------------------------------------------------

    def handle_chat_message(self, incoming: IncomingMessage) -> list[OutgoingMessage]:
        """Handle a DM from a Discord user; returns replies to post in the DM.

        Forwarded messages produce no immediate reply. The agent answers
        asynchronously through the webhook.
        """
        local_id = incoming.user_id
        try:
            record = self._users.load_user(local_id)
        except NotFoundError:
            try:
                url = self.connect_url(local_id)
            except CryptoError as exc:
                logger.error("Failed to build connect link for %s: %s", local_id, exc)  # noqa: TRY400
                return [OutgoingMessage(text=GENERIC_ERROR_MESSAGE)]
            return [OutgoingMessage(text=WELCOME_MESSAGE.format(url))]

        text = incoming.content.strip()
        if self._pending.get(local_id) == MARKER_DISCONNECT:
            confirmed = text.lower() in AFFIRMATIVE_REPLIES
            return [OutgoingMessage(text=self.handle_disconnect(local_id, confirmed=confirmed))]

        if text.lower() == DISCONNECT_KEYWORD:
            self._pending.mark(local_id, MARKER_DISCONNECT, PENDING_TTL_SECONDS)
            return [self.disconnect_prompt()]

        if len(incoming.attachments) > 1:
            return [OutgoingMessage(text=MULTIPLE_ATTACHMENTS_MESSAGE)]

        try:
            attachment = self._attachment_for(incoming.attachments[0]) if incoming.attachments else None
            client = self._client_for(record)
            client.send_message(record.remote_id, incoming.content, typed=True, attachment=attachment)
        except (TransportError, CryptoError) as exc:
            logger.error("Failed to forward message from %s: %s", local_id, exc)  # noqa: TRY400
            return [OutgoingMessage(text=GENERIC_ERROR_MESSAGE)]
        return []

    def disconnect_prompt(self) -> OutgoingMessage:
        """Confirmation card with Yes/No buttons."""
        return OutgoingMessage(
            cards=[Card(title=DISCONNECT_CONFIRMATION_MESSAGE, color=DISCONNECT_COLOR)],
            actions=[
                Action(
                    kind="button",
                    label="Yes",
                    custom_id=disconnect_custom_id(self._action_base, confirmed=True),
                    style="danger",
                ),
                Action(
                    kind="button",
                    label="No",
                    custom_id=disconnect_custom_id(self._action_base, confirmed=False),
                    style="secondary",
                ),
            ],
        )

    def handle_disconnect(self, local_id: str, *, confirmed: bool) -> str:
        """Resolve a disconnect confirmation and return the message to show."""
        self._pending.clear(local_id)
        try:
            self._users.load_user(local_id)
        except NotFoundError:
            return ALREADY_DISCONNECTED_MESSAGE
        if not confirmed:
            return DISCONNECT_REJECTED_MESSAGE
        self._users.delete_user(local_id)
        self._post_ids.clear(local_id)
        logger.info("Disconnected user %s", local_id)
        return DISCONNECT_SUCCESS_MESSAGE

    # -----------------------------------------------------------------------
    # OAuth2
    # -----------------------------------------------------------------------

    def connect_url(self, local_id: str) -> str:
        """Signed, expiring link that starts OAuth2 for ``local_id``."""
        settings = self._settings.get()
        token = seal_reference(self._cipher(settings), local_id, CONNECT_LINK_TTL, kind=KIND_CONNECT, now=self._clock())
        return f"{settings.public_base_url}/oauth2/connect?token={token}"

    def open_connect_token(self, token: str) -> str:
        """Return the Discord user id sealed in a connect link token."""
        cipher = self._cipher(self._settings.get())
        return open_reference(cipher, token, kind=KIND_CONNECT, now=self._clock()).id

    def start_oauth(self, local_id: str) -> str:
        """Store a fresh state for ``local_id`` and return the consent URL."""
        if not local_id:
            msg = "Not authorized"
            raise AuthError(msg)
        try:
            self._users.load_user(local_id)
        except NotFoundError:
            pass
        else:
            msg = "user is already connected to ServiceNow"
            raise AlreadyConnectedError(msg)

        state = f"{secrets.token_hex(8)[:15]}{STATE_DELIMITER}{local_id}"
        self._states.store_state(state)
        self._pending.mark(local_id, MARKER_LINK_PENDING, PENDING_TTL_SECONDS)
        return self._oauth_factory(self._settings.get().client_config()).authorization_url(state)

    def complete_oauth(self, authed_local_id: str, code: str, state: str) -> SessionRecord:
        """Finish linking; nothing is persisted unless every step before the write succeeds.

        Raises:
            AuthError: Missing user, code or state.
            OAuthStateError: The state is unknown, expired or altered.
            AuthorizationMismatchError: The state was issued to another user.
            TransportError: Code exchange or profile lookup failed.
            CryptoError: The token could not be encrypted.

        """
        if not authed_local_id or not code or not state:
            msg = "missing user, code or state"
            raise AuthError(msg)

        self._states.verify_state(state)
        _, _, state_user_id = state.partition(STATE_DELIMITER)
        if state_user_id != authed_local_id:
            msg = "not authorized, user ID mismatch"
            raise AuthorizationMismatchError(msg)

        settings = self._settings.get()
        config = settings.client_config()
        cipher = self._cipher(settings)
        token = self._oauth_factory(config).exchange_code(code)
        client = self._client_factory(config, token, _discard_token)
        remote_user = client.get_me()
        record = SessionRecord(
            local_id=authed_local_id,
            remote_id=remote_user.sys_id,
            encrypted_token=cipher.encrypt_token(token),
            email=remote_user.email,
            user_name=remote_user.user_name,
        )
        self._users.store_user(record)
        self._pending.clear(authed_local_id)
        logger.info("Linked user %s to ServiceNow user %s", authed_local_id, remote_user.sys_id)

        try:
            display = remote_user.email or remote_user.user_name or remote_user.sys_id
            self._sender.direct_message(authed_local_id, OutgoingMessage(text=CONNECT_SUCCESS_MESSAGE.format(display)))
            self._client_for(record).start_conversation(record.remote_id)
        except TransportError:
            logger.exception("Linked user %s but could not start the conversation", authed_local_id)
        return record

    # -----------------------------------------------------------------------
    # Webhook
    # -----------------------------------------------------------------------

    def process_webhook(self, raw: bytes | str) -> BatchReport:
        """Decode an agent response and deliver it to the linked Discord user.

        Raises:
            DecodeError: The envelope is malformed.
            NotFoundError: No user is linked to the envelope's ``userId``.
            TransportError: Discord rejected a message; later items are skipped.

        """
        event = decode_event(raw)
        record = self._users.load_user_by_remote_id(event.user_id)
        local_id = record.local_id
        self._strip_previous_carousels(local_id)

        def deliver(message: OutgoingMessage) -> str:
            return self._sender.direct_message(local_id, message)

        report = render_event(event, deliver, action_base=self._action_base)
        if report.carousel_message_ids or report.select_values:
            post_ids = PostIDs(
                channel_id=self._sender.dm_channel(local_id),
                message_ids=report.carousel_message_ids,
                carousel_values=report.carousel_values,
                select_values=report.select_values,
            )
            self._post_ids.save(local_id, post_ids)
        return report

    def _strip_previous_carousels(self, local_id: str) -> None:
        previous = self._post_ids.load(local_id)
        if previous == PostIDs():
            return
        self._post_ids.clear(local_id)
        for message_id in previous.message_ids:
            try:
                self._sender.strip_actions(previous.channel_id, message_id)
            except TransportError as exc:
                logger.debug("Unable to update carousel message %s: %s", message_id, exc)

    # -----------------------------------------------------------------------
    # Interactions
    # -----------------------------------------------------------------------

    def handle_option_selection(self, local_id: str, value: str, label: str = "", position: str | None = None) -> str:
        """Forward a picked option as a typed message.

        ``value`` may have been cut to fit a Discord control; the full value
        recorded for the last posts is sent instead. A carousel pick is looked
        up by ``position``.
        """
        record = self._users.load_user(local_id)
        value = self._full_value(local_id, value, position)
        self._client_for(record).send_message(record.remote_id, value, typed=True)
        return f"You selected: {label or value}"

    def _full_value(self, local_id: str, value: str, position: str | None) -> str:
        posts = self._post_ids.load(local_id)
        full = posts.carousel_values.get(position, "") if position is not None else posts.select_values.get(value, "")
        return full if full.startswith(value) else value

    def handle_date_time(self, local_id: str, ui_type: str, date: str = "", time: str = "") -> ActionReply:
        """Validate and forward a date/time modal submission."""
        errors: dict[str, str] = {}
        if ui_type in ("Date", "DateTime") and not _valid(date, _DATE_PATTERN, "%Y-%m-%d"):
            errors[DATE_FIELD] = DATE_VALIDATION_ERROR
        if ui_type in ("Time", "DateTime") and not _valid(time, _TIME_PATTERN, "%H:%M"):
            errors[TIME_FIELD] = TIME_VALIDATION_ERROR
        if errors:
            return ActionReply(errors=errors)

        if ui_type == "DateTime":
            selected = f"{date} {time}:00"
        elif ui_type == "Date":
            selected = date
        else:
            selected = f"{time}:00"

        record = self._users.load_user(local_id)
        self._client_for(record).send_message(record.remote_id, selected, typed=True)
        return ActionReply(text=f"You selected {ui_type}: {selected}")

    # -----------------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------------

    def open_file(self, token: str) -> tuple[bytes, str | None]:
        """Return the bytes behind a generated download link.

        Raises:
            ValueError: The token is not valid base64.
            CryptoError: The token does not decrypt to a file reference.
            NotFoundError: The link expired or the file is gone.

        """
        cipher = self._cipher(self._settings.get())
        reference = open_reference(cipher, token, kind=KIND_FILE, now=self._clock())
        return self._file_source.fetch(reference.id)

    def _attachment_for(self, attachment: IncomingAttachment) -> MessageAttachment:
        settings = self._settings.get()
        ttl = timedelta(minutes=settings.attachment_link_expiry_minutes)
        token = seal_reference(self._cipher(settings), attachment.url, ttl, kind=KIND_FILE, now=self._clock())
        return MessageAttachment(
            url=f"{settings.public_base_url}/file/{token}",
            content_type=attachment.content_type,
            file_name=attachment.filename,
        )

    # -----------------------------------------------------------------------
    # Settings
    # -----------------------------------------------------------------------

    def on_settings_changed(self, old: Settings, new: Settings) -> None:
        """Drop every stored session when the encryption secret changes."""
        if old.encryption_secret != new.encryption_secret:
            logger.info("Encryption secret changed; removing stored user tokens")
            self._users.purge_users()

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _cipher(self, settings: Settings) -> TokenCipher:
        return self._cipher_factory(settings.encryption_secret)

    def _client_for(self, record: SessionRecord) -> Client:
        settings = self._settings.get()
        cipher = self._cipher(settings)
        token = cipher.decrypt_token(record.encrypted_token)

        def save_token(new_token: dict[str, Any]) -> None:
            updated = record.model_copy(update={"encrypted_token": cipher.encrypt_token(new_token)})
            self._users.store_user(updated)

        return self._client_factory(settings.client_config(), token, save_token)


def _discard_token(_token: dict[str, Any]) -> None:
    return None


def _valid(value: str, pattern: re.Pattern[str], layout: str) -> bool:
    if not pattern.match(value):
        return False
    try:
        datetime.strptime(value, layout)  # noqa: DTZ007
    except ValueError:
        return False
    return True
