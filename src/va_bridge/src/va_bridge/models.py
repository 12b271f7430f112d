"""Pydantic schemas for listener↔bridge communication."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from va_bridge.render import OutgoingMessage


class IncomingAttachment(BaseModel):
    """File attached to a chat message, as reported by the listener."""

    url: str
    content_type: str = ""
    filename: str = ""


class IncomingMessage(BaseModel):
    """Normalized incoming chat message."""

    provider: str = "discord"
    channel_id: str
    user_id: str
    content: str
    message_id: str | None = None
    timestamp: str | None = None
    attachments: list[IncomingAttachment] = Field(default_factory=list)


class BridgeReply(BaseModel):
    """Messages the listener should post back in the conversation."""

    messages: list[OutgoingMessage] = Field(default_factory=list)


class OptionSelection(BaseModel):
    """Option picked from a select menu or carousel."""

    value: str
    label: str = ""
    position: str | None = None


class DisconnectDecision(BaseModel):
    confirmed: bool


class DateTimeSubmission(BaseModel):
    """Values entered in the date/time modal."""

    ui_type: Literal["Date", "Time", "DateTime"]
    date: str = ""
    time: str = ""


class ActionReply(BaseModel):
    """Acknowledgement shown to the user; ``errors`` maps modal fields to problems."""

    text: str = ""
    errors: dict[str, str] = Field(default_factory=dict)


class ConnectReply(BaseModel):
    text: str
    url: str | None = None
