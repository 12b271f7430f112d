"""FastAPI bridge between Discord and the ServiceNow Virtual Agent.

Receives agent responses on the webhook, relays chat events from the Discord
listener, serves expiring attachment links and hosts the OAuth2 routes.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

import servicenow_client_impl  # noqa: F401  # ensure ServiceNow implementation registers itself
from va_bridge.dependencies import get_bridge, reload_settings
from va_bridge.errors import (
    GENERIC_ERROR_MESSAGE,
    APIError,
    CryptoError,
    DecodeError,
    NotFoundError,
    TransportError,
)
from va_bridge.models import (
    ActionReply,
    BridgeReply,
    ConnectReply,
    DateTimeSubmission,
    DisconnectDecision,
    IncomingMessage,
    OptionSelection,
)
from va_bridge.oauth_routes import router as oauth_router
from va_bridge.security import verify_secret
from va_bridge.session import (
    ALREADY_CONNECTED_MESSAGE,
    WELCOME_MESSAGE,
    LinkState,
    SessionBridge,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("va_bridge")

router = APIRouter(tags=["Bridge"])

NOT_AUTHORIZED = "Not authorized"
NOT_LINKED_MESSAGE = "You're not connected to ServiceNow. Send me a message to get a connect link."
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"BM", "image/bmp"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Reload configuration on SIGHUP while the app is serving."""
    hooked = False
    if hasattr(signal, "SIGHUP"):
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, reload_settings, app)
            hooked = True
        except (NotImplementedError, RuntimeError, ValueError):
            logger.info("SIGHUP reload is unavailable in this process")
    try:
        yield
    finally:
        if hooked:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)


def create_app(bridge: SessionBridge | None = None) -> FastAPI:
    """Build the bridge app; without ``bridge`` one is built from the environment on first use."""
    application = FastAPI(title="Virtual Agent Bridge", version="0.1.0", lifespan=lifespan)
    if bridge is not None:
        application.state.bridge = bridge
    application.add_exception_handler(APIError, _api_error_handler)
    application.include_router(oauth_router)
    application.include_router(router)
    return application


async def _api_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    status_code = exc.status_code if isinstance(exc, APIError) else 500
    message = exc.message if isinstance(exc, APIError) else GENERIC_ERROR_MESSAGE
    return JSONResponse(status_code=status_code, content={"message": message})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/health")
async def health() -> dict[str, str]:
    """Return a basic health payload."""
    return {"status": "ok"}


@router.post("/nowbot/processResponse")
async def process_response(
    request: Request,
    secret: str | None = None,
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> dict[str, str]:
    """Receive a Virtual Agent response batch and deliver it to Discord."""
    # Query parsing turns "+" into a space.
    candidate = secret.replace(" ", "+") if secret else secret
    check = verify_secret(bridge.settings.webhook_secret, candidate)
    if not check.accepted:
        logger.warning("Rejected webhook call: %s", check.reason)
        raise APIError(403, NOT_AUTHORIZED)

    body = await request.body()
    try:
        report = await run_in_threadpool(bridge.process_webhook, body)
    except DecodeError as exc:
        logger.error("Undecodable webhook body: %s", exc)  # noqa: TRY400
        raise APIError(500, str(exc)) from exc
    except NotFoundError as exc:
        logger.error("Webhook for an unlinked user: %s", exc)  # noqa: TRY400
        raise APIError(500, str(exc)) from exc
    except TransportError as exc:
        logger.exception("Failed to deliver webhook response")
        raise APIError(500, str(exc)) from exc
    for problem in report.errors:
        logger.warning("Render error: %s", problem)
    return {"status": "OK"}


@router.get("/file/{encrypted_file_info}")
def get_file(encrypted_file_info: str, bridge: SessionBridge = Depends(get_bridge)) -> Response:  # noqa: B008
    """Serve the attachment behind an expiring link."""
    try:
        data, declared = bridge.open_file(encrypted_file_info)
    except NotFoundError as exc:
        raise APIError(404, "file not found") from exc
    except CryptoError as exc:
        logger.error("Undecryptable file link: %s", exc)  # noqa: TRY400
        raise APIError(500, "failed to read file link") from exc
    except ValueError as exc:
        raise APIError(400, "invalid file link") from exc
    except TransportError as exc:
        logger.exception("Failed to fetch attachment")
        raise APIError(500, "failed to fetch file") from exc
    return Response(content=data, media_type=detect_content_type(data, declared))


@router.post("/events/message", response_model=BridgeReply)
def handle_message(
    incoming_message: IncomingMessage,
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> BridgeReply:
    """Handle inbound chat messages from the listener."""
    logger.info("Message from %s on %s", incoming_message.user_id, incoming_message.provider)
    return BridgeReply(messages=bridge.handle_chat_message(incoming_message))


@router.post("/actions/options", response_model=ActionReply)
def select_option(
    selection: OptionSelection,
    x_user_id: str | None = Header(default=None),  # noqa: B008
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> ActionReply:
    """Forward a picked option to the agent."""
    local_id = _require_user(x_user_id)
    with _action_errors(local_id):
        text = bridge.handle_option_selection(local_id, selection.value, selection.label, position=selection.position)
        return ActionReply(text=text)


@router.post("/actions/disconnect", response_model=ActionReply)
def confirm_disconnect(
    decision: DisconnectDecision,
    x_user_id: str | None = Header(default=None),  # noqa: B008
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> ActionReply:
    """Resolve the Yes/No disconnect confirmation."""
    local_id = _require_user(x_user_id)
    return ActionReply(text=bridge.handle_disconnect(local_id, confirmed=decision.confirmed))


@router.post("/actions/date_time", response_model=ActionReply)
def submit_date_time(
    submission: DateTimeSubmission,
    x_user_id: str | None = Header(default=None),  # noqa: B008
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> ActionReply:
    """Validate a date/time modal and forward the value."""
    local_id = _require_user(x_user_id)
    with _action_errors(local_id):
        return bridge.handle_date_time(local_id, submission.ui_type, submission.date, submission.time)


@router.post("/actions/connect", response_model=ConnectReply)
def connect(
    x_user_id: str | None = Header(default=None),  # noqa: B008
    bridge: SessionBridge = Depends(get_bridge),  # noqa: B008
) -> ConnectReply:
    """Return a fresh connect link, unless the user is already linked."""
    local_id = _require_user(x_user_id)
    if bridge.link_state(local_id) in (LinkState.LINKED, LinkState.DISCONNECT_CONFIRMING):
        return ConnectReply(text=ALREADY_CONNECTED_MESSAGE)
    url = bridge.connect_url(local_id)
    return ConnectReply(text=WELCOME_MESSAGE.format(url), url=url)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise APIError(401, NOT_AUTHORIZED)
    return user_id


@contextmanager
def _action_errors(local_id: str) -> Iterator[None]:
    """Map bridge failures inside an action route onto API errors."""
    try:
        yield
    except NotFoundError as exc:
        raise APIError(404, NOT_LINKED_MESSAGE) from exc
    except (TransportError, CryptoError) as exc:
        logger.error("Action failed for %s: %s", local_id, exc)  # noqa: TRY400
        raise APIError(500, GENERIC_ERROR_MESSAGE) from exc


def detect_content_type(data: bytes, declared: str | None = None) -> str:
    """Sniff ``data`` by magic number, then trust ``declared``, then fall back to octet-stream."""
    for signature, content_type in _SIGNATURES:
        if data.startswith(signature):
            return content_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return declared or DEFAULT_CONTENT_TYPE


app = create_app()
