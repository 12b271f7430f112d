"""Request-side schemas and shared errors for the Virtual Agent API."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "START_CONVERSATION_ACTION",
    "ClientConfig",
    "DecodeError",
    "MessageAttachment",
    "MessageBody",
    "RemoteUser",
    "RequestEnvelope",
    "TransportError",
    "new_request_id",
]

START_CONVERSATION_ACTION = "START_CONVERSATION"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DecodeError(ValueError):
    """Raised when an inbound envelope cannot be decoded."""


class TransportError(RuntimeError):
    """Raised when a call to the remote agent fails or returns an application error."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        """Create a transport error carrying the decoded remote error, if any."""
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ClientConfig(_Schema):
    """Immutable connection settings for a remote agent client."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    client_id: str
    client_secret: str
    redirect_url: str
    timeout_seconds: float = 30.0


class MessageAttachment(_Schema):
    """Attachment reference sent along with a user message."""

    url: str
    content_type: str = Field("", alias="contentType")
    file_name: str = Field("", alias="fileName")


class MessageBody(_Schema):
    """User message forwarded to the remote agent."""

    text: str = ""
    typed: bool = False
    attachment: MessageAttachment | None = None


class RequestEnvelope(_Schema):
    """Outbound bot-integration request."""

    action: str | None = None
    message: MessageBody | None = None
    request_id: str = Field(alias="requestId")
    user_id: str = Field(alias="userId")

    def to_payload(self) -> dict[str, object]:
        """Return the JSON body expected by the bot-integration endpoint."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RemoteUser(_Schema):
    """Subset of the remote ``sys_user`` record used by the bridge."""

    sys_id: str
    email: str = ""
    user_name: str = ""


def new_request_id() -> str:
    """Return a fresh correlation id for an outbound call."""
    return str(uuid.uuid4())
