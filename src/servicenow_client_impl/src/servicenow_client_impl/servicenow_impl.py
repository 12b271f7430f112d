"""ServiceNow Client Implementation.

Concrete virtual_agent_api.Client backed by the ServiceNow bot-integration and
table APIs. Requests are signed with the linked user's OAuth2 token through a
``requests_oauthlib`` session that refreshes the token transparently.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import requests
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests_oauthlib import OAuth2Session

import virtual_agent_api
from virtual_agent_api import (
    START_CONVERSATION_ACTION,
    Client,
    ClientConfig,
    MessageAttachment,
    MessageBody,
    OAuthProvider,
    RemoteUser,
    RequestEnvelope,
    TransportError,
    new_request_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("servicenow_client_impl")

PATH_BOT_INTEGRATION = "/api/sn_va_as_service/bot/integration"
PATH_GET_USER = "/api/now/table/sys_user"
PATH_OAUTH_AUTHORIZE = "/oauth_auth.do"
PATH_OAUTH_TOKEN = "/oauth_token.do"  # noqa: S105
SYS_QUERY_PARAM = "sysparm_query"
CURRENT_USER_QUERY = "sys_id=javascript:gs.getUserID()"


# ---------------------------------------------------------------------------
# Client implementation
# ---------------------------------------------------------------------------


class ServiceNowClient(Client):
    """Concrete virtual_agent_api.Client that talks to a ServiceNow instance.

    Attributes:
        _config: Connection settings snapshot.
        _session: OAuth2 session carrying (and refreshing) the user's token.

    """

    def __init__(
        self,
        config: ClientConfig,
        token: dict[str, Any],
        token_updater: Callable[[dict[str, Any]], None] | None = None,
        session: OAuth2Session | None = None,
    ) -> None:
        """Bind the client to a user's token."""
        self._config = config
        self._session = session or OAuth2Session(
            client_id=config.client_id,
            token=token,
            auto_refresh_url=_url(config, PATH_OAUTH_TOKEN),
            auto_refresh_kwargs={"client_id": config.client_id, "client_secret": config.client_secret},
            token_updater=token_updater or _ignore_token,
        )

    def send_message(
        self,
        user_id: str,
        text: str,
        *,
        typed: bool = True,
        attachment: MessageAttachment | None = None,
    ) -> None:
        """Forward a user message to the Virtual Agent."""
        envelope = RequestEnvelope(
            request_id=new_request_id(),
            user_id=user_id,
            message=MessageBody(text=text, typed=typed, attachment=attachment),
        )
        try:
            self.call_json("POST", PATH_BOT_INTEGRATION, body=envelope.to_payload())
        except TransportError as exc:
            msg = f"failed to call virtual agent bot integration API: {exc.message}"
            raise TransportError(msg, status_code=exc.status_code, detail=exc.detail) from exc

    def start_conversation(self, user_id: str) -> None:
        """Open a new Virtual Agent conversation for the user."""
        envelope = RequestEnvelope(
            action=START_CONVERSATION_ACTION,
            request_id=new_request_id(),
            user_id=user_id,
        )
        try:
            self.call_json("POST", PATH_BOT_INTEGRATION, body=envelope.to_payload())
        except TransportError as exc:
            msg = f"failed to start conversation with virtual agent bot: {exc.message}"
            raise TransportError(msg, status_code=exc.status_code, detail=exc.detail) from exc

    def get_me(self, email: str | None = None) -> RemoteUser:
        """Return the ``sys_user`` record matching ``email``, or the token owner's."""
        query = f"email={email}" if email else CURRENT_USER_QUERY
        payload = self.call_json("GET", PATH_GET_USER, params={SYS_QUERY_PARAM: query})
        results = payload.get("result") if isinstance(payload, dict) else None
        if not results:
            msg = f"user doesn't exist on ServiceNow with email {email}" if email else "no ServiceNow user owns this token"
            raise TransportError(msg)
        if len(results) > 1:
            logger.warning(
                "Multiple users with the same email address exist on ServiceNow (email=%s, instance=%s)",
                email,
                self._config.base_url,
            )
        return RemoteUser.model_validate(results[0])

    def call_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:  # noqa: ANN401
        """Issue a JSON request and decode the response.

        Returns:
            The decoded JSON body, or ``None`` for 204/empty responses.

        Raises:
            TransportError: Network failure, token refresh failure, non-2xx
                status (with the remote ``{"error": {...}}`` decoded) or an
                undecodable body.

        """
        try:
            response = self._session.request(
                method,
                _url(self._config, path),
                json=body,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self._config.timeout_seconds,
            )
        except (requests.RequestException, OAuth2Error) as exc:
            msg = f"{method} {path} failed: {exc}"
            raise TransportError(msg) from exc

        if response.status_code == HTTPStatus.NO_CONTENT:
            return None
        if not HTTPStatus.OK <= response.status_code < HTTPStatus.MULTIPLE_CHOICES:
            raise _error_from_response(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            msg = f"{method} {path} returned an invalid JSON body"
            raise TransportError(msg, status_code=response.status_code) from exc


class ServiceNowOAuth(OAuthProvider):
    """Authorization-code flow against ``oauth_auth.do`` / ``oauth_token.do``."""

    def __init__(self, config: ClientConfig) -> None:
        """Store the settings snapshot used to build sessions."""
        self._config = config

    def _session(self, state: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self._config.client_id,
            redirect_uri=self._config.redirect_url,
            state=state,
        )

    def authorization_url(self, state: str) -> str:
        """Return the ServiceNow consent URL, requesting offline access."""
        url, _ = self._session(state).authorization_url(
            _url(self._config, PATH_OAUTH_AUTHORIZE),
            state=state,
            access_type="offline",
        )
        return url

    def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for a token dict."""
        try:
            token = self._session().fetch_token(
                _url(self._config, PATH_OAUTH_TOKEN),
                code=code,
                client_secret=self._config.client_secret,
                include_client_id=True,
                timeout=self._config.timeout_seconds,
            )
        except (requests.RequestException, OAuth2Error) as exc:
            msg = f"failed to exchange authorization code: {exc}"
            raise TransportError(msg) from exc
        return dict(token)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def get_client_impl(
    config: ClientConfig,
    token: dict[str, Any],
    token_updater: Callable[[dict[str, Any]], None] | None = None,
) -> ServiceNowClient:
    """Return a ServiceNowClient bound to ``token``."""
    return ServiceNowClient(config, token, token_updater=token_updater)


def get_oauth_impl(config: ClientConfig) -> ServiceNowOAuth:
    """Return the ServiceNow OAuth provider."""
    return ServiceNowOAuth(config)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _url(config: ClientConfig, path: str) -> str:
    return f"{config.base_url.rstrip('/')}{path}"


def _ignore_token(_token: dict[str, Any]) -> None:
    return None


def _error_from_response(response: requests.Response) -> TransportError:
    """Decode ``{"error": {"message", "detail"}}`` into a TransportError."""
    message = f"unexpected status {response.status_code}"
    detail = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        detail = str(error["detail"]) if error.get("detail") else None
    return TransportError(message, status_code=response.status_code, detail=detail)


# ---------------------------------------------------------------------------
# Factory registration
# ---------------------------------------------------------------------------


def register() -> None:
    """Bind the ServiceNow factories into virtual_agent_api."""
    virtual_agent_api.get_client = get_client_impl
    virtual_agent_api.get_oauth = get_oauth_impl
