"""Turn decoded Virtual Agent items into chat-native outgoing messages.

Rendering is a pure data transform: every ``ResponseItem`` variant maps to zero
or more :class:`OutgoingMessage` values. Delivery is a separate callable so a
batch can fail soft on bad content yet stop at the first transport failure.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from virtual_agent_api import (
    ConversationEvent,
    DefaultDate,
    GroupedPartsOutputControl,
    ImageCard,
    Option,
    OutputCard,
    OutputImage,
    OutputLink,
    OutputText,
    Picker,
    RecordCard,
    ResponseItem,
    TopicPickerControl,
    VideoCard,
)
from virtual_agent_api.events import ITEM_TYPE_FILE, ITEM_TYPE_IMAGE

logger = logging.getLogger("va_bridge.render")

DEFAULT_ACTION_BASE = "va"

UPLOAD_IMAGE_NOTE = (
    "\n(**Note:** Please upload an image using the `+` button next to the message box"
    " OR drag and drop it into this conversation.)"
)
UPLOAD_FILE_NOTE = (
    "\n(**Note:** Please upload a file using the `+` button next to the message box"
    " OR drag and drop it into this conversation.)"
)
TOPIC_PICKER_EMPTY_NOTICE = "TopicPickerControl dropdown has no options to display."
PICKER_EMPTY_NOTICE = "Picker dropdown has no options to display."
INVALID_IMAGE_LINK = "Invalid image link."
YOUTUBE_URL = "https://www.youtube.com/watch?v={}"
SELECT_PLACEHOLDER = "Select an option..."

# Discord message limits.
MAX_EMBEDS_PER_MESSAGE = 10
MAX_EMBED_CHARS_PER_MESSAGE = 6000
MAX_SELECT_OPTIONS = 25
MAX_ACTION_ROWS = 5
MAX_CUSTOM_ID = 100
MAX_OPTION_FIELD = 100

CAROUSEL_COLOR = 0x5865F2


# ---------------------------------------------------------------------------
# Outgoing model
# ---------------------------------------------------------------------------


class SelectOption(BaseModel):
    label: str
    value: str


class Action(BaseModel):
    """Interactive control attached to a message (select menu or button)."""

    kind: Literal["select", "button"]
    label: str
    custom_id: str
    options: list[SelectOption] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    style: Literal["primary", "secondary", "success", "danger"] = "primary"


class CardField(BaseModel):
    title: str
    value: str


class Card(BaseModel):
    """Rich card, rendered as a Discord embed."""

    pretext: str = ""
    title: str = ""
    text: str = ""
    image_url: str = ""
    fields: list[CardField] = Field(default_factory=list)
    color: int | None = None


class RemoteFile(BaseModel):
    """File the sender downloads and uploads; ``text`` is shown if that fails."""

    url: str
    filename: str


class OutgoingMessage(BaseModel):
    """Platform-neutral message ready for a :class:`va_bridge.sender.MessageSender`."""

    text: str = ""
    cards: list[Card] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    file: RemoteFile | None = None
    carousel: bool = False


class RenderResult(BaseModel):
    """Messages for one item plus any informational notice or non-fatal error."""

    messages: list[OutgoingMessage] = Field(default_factory=list)
    notice: str | None = None
    error: str | None = None


class BatchReport(BaseModel):
    """Outcome of rendering and delivering one conversation event."""

    delivered: int = 0
    carousel_message_ids: list[str] = Field(default_factory=list)
    carousel_values: dict[str, str] = Field(default_factory=dict)
    select_values: dict[str, str] = Field(default_factory=dict)
    notices: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


Deliver = Callable[[OutgoingMessage], "str | None"]


# ---------------------------------------------------------------------------
# Custom ids
# ---------------------------------------------------------------------------


def options_custom_id(action_base: str, index: int = 0) -> str:
    return f"{action_base}:options:{index}"


def carousel_custom_id(action_base: str, position: int, value: str) -> str:
    custom_id = f"{action_base}:carousel:{position}:{value}"
    if len(custom_id) > MAX_CUSTOM_ID:
        logger.warning("Carousel value at position %s cut to fit the custom id; resolved by position", position)
    return custom_id[:MAX_CUSTOM_ID]


def date_custom_id(action_base: str, ui_type: str) -> str:
    return f"{action_base}:date:{ui_type}"


def disconnect_custom_id(action_base: str, *, confirmed: bool) -> str:
    return f"{action_base}:disconnect:{'yes' if confirmed else 'no'}"


# ---------------------------------------------------------------------------
# Item rendering
# ---------------------------------------------------------------------------


def render_item(item: ResponseItem, *, action_base: str = DEFAULT_ACTION_BASE) -> RenderResult:
    """Render a single decoded item.

    Args:
        item: A decoded response item.
        action_base: Prefix for the custom ids of interactive controls.

    Returns:
        The messages to deliver, in order. Unhandled items and cards whose
        payload could not be decoded yield an empty result.

    """
    if isinstance(item, OutputText):
        return _render_output_text(item)
    if isinstance(item, TopicPickerControl):
        return _render_topic_picker(item, action_base)
    if isinstance(item, Picker):
        return _render_picker(item, action_base)
    if isinstance(item, OutputLink):
        card = Card(pretext=item.header, text=f"[{item.label}]({item.value.action})")
        return RenderResult(messages=[OutgoingMessage(cards=[card])])
    if isinstance(item, GroupedPartsOutputControl):
        return _render_grouped_parts(item)
    if isinstance(item, OutputCard):
        return _render_output_card(item)
    if isinstance(item, OutputImage):
        return _render_output_image(item)
    if isinstance(item, DefaultDate):
        return _render_default_date(item, action_base)
    return RenderResult()


def _render_output_text(item: OutputText) -> RenderResult:
    text = item.value
    if item.label:
        text = item.label
        if item.item_type == ITEM_TYPE_IMAGE:
            text += UPLOAD_IMAGE_NOTE
        elif item.item_type == ITEM_TYPE_FILE:
            text += UPLOAD_FILE_NOTE
    if not text:
        return RenderResult()
    return RenderResult(messages=[OutgoingMessage(text=text)])


def _select_actions(options: list[Option], action_base: str) -> list[Action]:
    """Select menus of at most 25 options each.

    Values longer than a select option allows are cut; each menu's context maps
    the cut value back to the full one.
    """
    choices: list[SelectOption] = []
    full_values: dict[str, str] = {}
    for option in options:
        value = option.resolved_value[:MAX_OPTION_FIELD]
        if value != option.resolved_value:
            logger.warning("Select option value cut to %s characters", MAX_OPTION_FIELD)
            full_values[value] = option.resolved_value
        choices.append(SelectOption(label=option.label[:MAX_OPTION_FIELD], value=value))
    chunks = [choices[i : i + MAX_SELECT_OPTIONS] for i in range(0, len(choices), MAX_SELECT_OPTIONS)]
    if len(chunks) > MAX_ACTION_ROWS:
        dropped = len(choices) - MAX_ACTION_ROWS * MAX_SELECT_OPTIONS
        logger.warning("Dropping %s options beyond the select menu limit", dropped)
        chunks = chunks[:MAX_ACTION_ROWS]
    return [
        Action(
            kind="select",
            label=SELECT_PLACEHOLDER,
            custom_id=options_custom_id(action_base, index),
            options=chunk,
            context={"values": {c.value: full_values[c.value] for c in chunk if c.value in full_values}},
        )
        for index, chunk in enumerate(chunks)
    ]


def _render_topic_picker(item: TopicPickerControl, action_base: str) -> RenderResult:
    if not item.options:
        logger.info(TOPIC_PICKER_EMPTY_NOTICE)
        return RenderResult(notice=TOPIC_PICKER_EMPTY_NOTICE)
    message = OutgoingMessage(text=item.prompt_msg, actions=_select_actions(item.options, action_base))
    return RenderResult(messages=[message])


def _render_picker(item: Picker, action_base: str) -> RenderResult:
    messages = [OutgoingMessage(text=item.label)] if item.label else []
    if not item.options:
        logger.info(PICKER_EMPTY_NOTICE)
        return RenderResult(messages=messages, notice=PICKER_EMPTY_NOTICE)
    if item.is_carousel:
        messages.extend(_render_carousel(item.options, action_base))
    else:
        messages.append(OutgoingMessage(actions=_select_actions(item.options, action_base)))
    return RenderResult(messages=messages)


def _render_carousel(options: list[Option], action_base: str) -> list[OutgoingMessage]:
    """Numbered picture cards with a Select button each, split across messages."""
    messages: list[OutgoingMessage] = []
    current = OutgoingMessage(carousel=True)
    for position, option in enumerate(options, start=1):
        title = f"{position}) {option.label}"
        card = Card(title=title, text=option.description, image_url=option.attachment, color=CAROUSEL_COLOR)
        button = Action(
            kind="button",
            label="Select",
            custom_id=carousel_custom_id(action_base, position, option.resolved_value),
            context={"label": title, "value": option.resolved_value, "position": str(position)},
        )
        if current.cards and not _fits(current, card):
            messages.append(current)
            current = OutgoingMessage(carousel=True)
        current.cards.append(card)
        current.actions.append(button)
    if current.cards:
        messages.append(current)
    return messages


def _fits(message: OutgoingMessage, card: Card) -> bool:
    if len(message.cards) >= MAX_EMBEDS_PER_MESSAGE:
        return False
    size = sum(len(json.dumps(existing.model_dump())) for existing in message.cards)
    return size + len(json.dumps(card.model_dump())) < MAX_EMBED_CHARS_PER_MESSAGE


def _render_grouped_parts(item: GroupedPartsOutputControl) -> RenderResult:
    messages = [OutgoingMessage(text=item.header)] if item.header else []
    for part in item.values:
        card = Card(title=f"[{part.label}]({part.action})", text=part.description)
        messages.append(OutgoingMessage(cards=[card]))
    return RenderResult(messages=messages)


def _render_output_card(item: OutputCard) -> RenderResult:
    card = item.card
    if isinstance(card, ImageCard):
        rendered = Card(text=f"**{card.title}**\n{card.description}", image_url=card.image)
        return RenderResult(messages=[OutgoingMessage(cards=[rendered])])
    if isinstance(card, VideoCard):
        rendered = Card(text=f"**[{card.title}]({card.link})**\n{card.description}")
        return RenderResult(
            messages=[
                OutgoingMessage(cards=[rendered]),
                OutgoingMessage(text=YOUTUBE_URL.format(card.id)),
            ]
        )
    if isinstance(card, RecordCard):
        fields = [CardField(title=card.title, value=f"[{card.subtitle}]({card.url})")]
        fields.extend(CardField(title=field.field_label, value=field.field_value) for field in card.fields)
        return RenderResult(messages=[OutgoingMessage(cards=[Card(fields=fields)])])
    return RenderResult()


def image_filename(url: str) -> str:
    """Last path segment of ``url``, without query string or fragment."""
    return url.split("/")[-1].split("?")[0].split("#")[0]


def _render_output_image(item: OutputImage) -> RenderResult:
    filename = image_filename(item.value)
    if not filename:
        logger.error("%s value=%s", INVALID_IMAGE_LINK, item.value)
        fallback = [OutgoingMessage(text=item.alt_text)] if item.alt_text else []
        return RenderResult(messages=fallback, error=INVALID_IMAGE_LINK)
    message = OutgoingMessage(text=item.alt_text, file=RemoteFile(url=item.value, filename=filename))
    return RenderResult(messages=[message])


def _render_default_date(item: DefaultDate, action_base: str) -> RenderResult:
    button = Action(
        kind="button",
        label=f"Set {item.ui_type}",
        custom_id=date_custom_id(action_base, item.ui_type),
        context={"type": item.ui_type},
    )
    return RenderResult(messages=[OutgoingMessage(cards=[Card(text=item.label)], actions=[button])])


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def render_event(
    event: ConversationEvent,
    deliver: Deliver,
    *,
    action_base: str = DEFAULT_ACTION_BASE,
) -> BatchReport:
    """Render every item of ``event`` in order and hand each message to ``deliver``.

    Content problems (empty pickers, invalid image links) are collected in the
    report and the batch continues. An exception raised by ``deliver`` stops
    the batch and propagates.
    """
    report = BatchReport()
    for item in event.body:
        result = render_item(item, action_base=action_base)
        if result.notice:
            report.notices.append(result.notice)
        if result.error:
            logger.warning("Render error for %s item: %s", type(item).__name__, result.error)
            report.errors.append(result.error)
        for message in result.messages:
            message_id = deliver(message)
            report.delivered += 1
            if message.carousel and message_id:
                report.carousel_message_ids.append(message_id)
            _collect_values(message, report)
    return report


def _collect_values(message: OutgoingMessage, report: BatchReport) -> None:
    for action in message.actions:
        if action.kind == "select":
            report.select_values.update(action.context.get("values", {}))
        elif message.carousel and "position" in action.context:
            report.carousel_values[action.context["position"]] = action.context["value"]
