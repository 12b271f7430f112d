"""ServiceNow OAuth2 routes for the bridge."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Cookie, Depends
from fastapi.responses import HTMLResponse, RedirectResponse

from va_bridge.dependencies import get_bridge
from va_bridge.errors import (
    APIError,
    AlreadyConnectedError,
    AuthorizationMismatchError,
    BridgeError,
    CryptoError,
    NotFoundError,
    OAuthStateError,
    TransportError,
)
from va_bridge.session import ALREADY_CONNECTED_MESSAGE, PENDING_TTL_SECONDS, SessionBridge

logger = logging.getLogger("va_bridge.oauth")

router = APIRouter(tags=["Auth"])

CONNECT_COOKIE = "va_connect"
NOT_AUTHORIZED = "Not authorized"
COMPLETED_HTML = """<!DOCTYPE html>
<html>
  <head><script>window.close();</script></head>
  <body><p>Completed connecting to ServiceNow. Please close this window.</p></body>
</html>
"""


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/oauth2/connect")
def oauth_connect(token: str | None = None, bridge: SessionBridge = Depends(get_bridge)) -> RedirectResponse:  # noqa: B008
    """Validate a connect link, store the OAuth2 state and redirect to ServiceNow."""
    if not token:
        raise APIError(400, "token is required.")
    local_id = _connect_user(bridge, token, status_code=400)
    try:
        auth_url = bridge.start_oauth(local_id)
    except AlreadyConnectedError as exc:
        raise APIError(400, ALREADY_CONNECTED_MESSAGE) from exc
    response = RedirectResponse(auth_url, status_code=302)
    response.set_cookie(
        CONNECT_COOKIE,
        token,
        max_age=PENDING_TTL_SECONDS,
        httponly=True,
        secure=bridge.settings.public_base_url.startswith("https://"),
        samesite="lax",
    )
    return response


@router.get("/oauth2/complete")
def oauth_complete(
    code: str | None = None,
    state: str | None = None,
    va_connect: str | None = Cookie(default=None),  # noqa: B008
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> HTMLResponse:
    """Handle the ServiceNow redirect, link the account and confirm to the user."""
    if not code or not state:
        raise APIError(400, "missing authorization code or state")
    if not va_connect:
        raise APIError(401, NOT_AUTHORIZED)
    authed_local_id = _connect_user(bridge, va_connect, status_code=401)
    try:
        bridge.complete_oauth(authed_local_id, code, state)
    except AuthorizationMismatchError as exc:
        logger.warning("OAuth2 completion rejected for %s: %s", authed_local_id, exc)
        raise APIError(403, str(exc)) from exc
    except OAuthStateError as exc:
        raise APIError(400, str(exc)) from exc
    except (TransportError, BridgeError) as exc:
        logger.exception("OAuth2 completion failed for %s", authed_local_id)
        raise APIError(500, "failed to connect to ServiceNow") from exc
    response = HTMLResponse(COMPLETED_HTML)
    response.delete_cookie(CONNECT_COOKIE)
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _connect_user(bridge: SessionBridge, token: str, *, status_code: int) -> str:
    """Open a connect token, mapping every failure to ``status_code``."""
    try:
        return bridge.open_connect_token(token)
    except NotFoundError as exc:
        raise APIError(status_code, "This connect link has expired. Send the bot a message for a new one.") from exc
    except (ValueError, CryptoError) as exc:
        raise APIError(status_code, "Invalid connect link.") from exc
