"""Inbound conversation events and the ``uiType`` dispatching decoder.

The remote agent answers asynchronously with an envelope whose ``body`` is a
list of heterogeneous UI items. Each item is classified by its ``uiType``
string and decoded into one variant of a closed set; anything unrecognised
becomes an :class:`UnhandledItem` so that downstream matches stay total.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from virtual_agent_api.models import DecodeError, MessageBody

__all__ = [
    "CAROUSEL_STYLE",
    "ConversationEvent",
    "DefaultDate",
    "GroupedPart",
    "GroupedPartsOutputControl",
    "ITEM_TYPE_FILE",
    "ITEM_TYPE_IMAGE",
    "ITEM_TYPE_PICTURE",
    "ImageCard",
    "Option",
    "OutputCard",
    "OutputImage",
    "OutputLink",
    "OutputText",
    "Picker",
    "RecordCard",
    "RecordField",
    "ResponseItem",
    "TopicPickerControl",
    "UnhandledItem",
    "VideoCard",
    "decode_event",
    "decode_item",
]

logger = logging.getLogger("virtual_agent_api.events")

OUTPUT_TEXT_UI_TYPE = "OutputText"
INPUT_TEXT_UI_TYPE = "InputText"
FILE_UPLOAD_UI_TYPE = "FileUpload"
TOPIC_PICKER_CONTROL_UI_TYPE = "TopicPickerControl"
PICKER_UI_TYPE = "Picker"
BOOLEAN_UI_TYPE = "Boolean"
OUTPUT_LINK_UI_TYPE = "OutputLink"
GROUPED_PARTS_OUTPUT_CONTROL_UI_TYPE = "GroupedPartsOutputControl"
OUTPUT_CARD_UI_TYPE = "OutputCard"
OUTPUT_IMAGE_UI_TYPE = "OutputImage"
DATE_UI_TYPE = "Date"
TIME_UI_TYPE = "Time"
DATE_TIME_UI_TYPE = "DateTime"

SMALL_IMAGE_TEMPLATE = "Small image with text"
LARGE_IMAGE_TEMPLATE = "Large image with text"
VIDEO_TEMPLATE = "Youtube Video Card"
RECORD_TEMPLATE = "Card"

ITEM_TYPE_IMAGE = "image"
ITEM_TYPE_FILE = "file"
ITEM_TYPE_PICTURE = "Picture"
CAROUSEL_STYLE = "carousel"


# ---------------------------------------------------------------------------
# Variant schemas
# ---------------------------------------------------------------------------


class _Item(BaseModel):
    """Lenient base: ``null`` fields fall back to their defaults, extras are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    group: str = ""

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:  # noqa: ANN401
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class Option(_Item):
    """Selectable option of a picker."""

    label: str = ""
    value: str = ""
    enabled: bool = False
    description: str = ""
    attachment: str = ""

    @property
    def resolved_value(self) -> str:
        """Return the option value, defaulting to its label."""
        return self.value or self.label


class OutputText(_Item):
    ui_type: Literal["OutputText", "InputText", "FileUpload"] = Field(alias="uiType")
    value: str = ""
    item_type: str = Field("", alias="type")
    mask_type: str = Field("", alias="maskType")
    label: str = ""
    required: bool = False


class TopicPickerControl(_Item):
    ui_type: Literal["TopicPickerControl"] = Field(alias="uiType")
    nlu_text_enabled: bool = Field(default=False, alias="nluTextEnabled")
    prompt_msg: str = Field("", alias="promptMsg")
    label: str = ""
    options: list[Option] = Field(default_factory=list)


class Picker(_Item):
    ui_type: Literal["Picker", "Boolean"] = Field(alias="uiType")
    required: bool = False
    nlu_text_enabled: bool = Field(default=False, alias="nluTextEnabled")
    label: str = ""
    item_type: str = Field("", alias="itemType")
    options: list[Option] = Field(default_factory=list)
    style: str = ""
    multi_select: bool = Field(default=False, alias="multiSelect")

    @property
    def is_carousel(self) -> bool:
        return self.item_type == ITEM_TYPE_PICTURE and self.style == CAROUSEL_STYLE


class OutputLinkValue(_Item):
    action: str = ""


class OutputLink(_Item):
    ui_type: Literal["OutputLink"] = Field(alias="uiType")
    label: str = ""
    header: str = ""
    link_type: str = Field("", alias="type")
    value: OutputLinkValue = Field(default_factory=OutputLinkValue)
    prompt_msg: str = Field("", alias="promptMsg")


class GroupedPart(_Item):
    label: str = ""
    action: str = ""
    description: str = ""


class GroupedPartsOutputControl(_Item):
    ui_type: Literal["GroupedPartsOutputControl"] = Field(alias="uiType")
    header: str = ""
    part_type: str = Field("", alias="type")
    values: list[GroupedPart] = Field(default_factory=list)


class ImageCard(_Item):
    image: str = ""
    description: str = ""
    data_now_smart_link: str = Field("", alias="dataNowSmartLink")
    title: str = ""
    url: str = ""
    image_alt: str = Field("", alias="imageAlt")
    target: str = ""


class VideoCard(_Item):
    link: str = ""
    description: str = ""
    id: str = ""
    data_now_smart_link: str = Field("", alias="dataNowSmartLink")
    title: str = ""
    url: str = ""
    target: str = ""


class RecordField(_Item):
    field_label: str = Field("", alias="fieldLabel")
    field_value: str = Field("", alias="fieldValue")


class RecordCard(_Item):
    sys_id: str = ""
    subtitle: str = ""
    data_now_smart_link: str = Field("", alias="dataNowSmartLink")
    title: str = ""
    fields: list[RecordField] = Field(default_factory=list)
    table_name: str = ""
    url: str = ""
    target: str = ""


CardPayload = Union[ImageCard, VideoCard, RecordCard]


class OutputCard(_Item):
    """Card item; ``data`` is a JSON string decoded according to ``templateName``."""

    ui_type: Literal["OutputCard"] = Field(alias="uiType")
    data: str = ""
    template_name: str = Field("", alias="templateName")
    card: CardPayload | None = Field(default=None, exclude=True)


class OutputImage(_Item):
    ui_type: Literal["OutputImage"] = Field(alias="uiType")
    value: str = ""
    alt_text: str = Field("", alias="altText")


class DefaultDate(_Item):
    """Date, time or date-time prompt; ``ui_type`` records which one."""

    ui_type: Literal["Date", "Time", "DateTime"] = Field(alias="uiType")
    required: bool = False
    nlu_text_enabled: bool = Field(default=False, alias="nluTextEnabled")
    label: str = ""


class UnhandledItem(_Item):
    """Item whose discriminator is unknown, missing or whose shape is invalid."""

    ui_type: str = Field("", alias="uiType")


ResponseItem = Union[
    OutputText,
    TopicPickerControl,
    Picker,
    OutputLink,
    GroupedPartsOutputControl,
    OutputCard,
    OutputImage,
    DefaultDate,
    UnhandledItem,
]


class ConversationEvent(BaseModel):
    """Envelope posted by the remote agent to the webhook."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = ""
    request_id: str = Field("", alias="requestId")
    user_id: str = Field("", alias="userId")
    message: MessageBody | None = None
    body: list[ResponseItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


_ITEM_SCHEMAS: dict[str, type[_Item]] = {
    OUTPUT_TEXT_UI_TYPE: OutputText,
    INPUT_TEXT_UI_TYPE: OutputText,
    FILE_UPLOAD_UI_TYPE: OutputText,
    TOPIC_PICKER_CONTROL_UI_TYPE: TopicPickerControl,
    PICKER_UI_TYPE: Picker,
    BOOLEAN_UI_TYPE: Picker,
    OUTPUT_LINK_UI_TYPE: OutputLink,
    GROUPED_PARTS_OUTPUT_CONTROL_UI_TYPE: GroupedPartsOutputControl,
    OUTPUT_CARD_UI_TYPE: OutputCard,
    OUTPUT_IMAGE_UI_TYPE: OutputImage,
    DATE_UI_TYPE: DefaultDate,
    TIME_UI_TYPE: DefaultDate,
    DATE_TIME_UI_TYPE: DefaultDate,
}

_CARD_SCHEMAS: dict[str, type[_Item]] = {
    SMALL_IMAGE_TEMPLATE: ImageCard,
    LARGE_IMAGE_TEMPLATE: ImageCard,
    VIDEO_TEMPLATE: VideoCard,
    RECORD_TEMPLATE: RecordCard,
}


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str | None = None
    request_id: str | None = Field(None, alias="requestId")
    user_id: str | None = Field(None, alias="userId")
    message: MessageBody | None = None
    body: list[Any] | None = None


def decode_event(raw: bytes | str) -> ConversationEvent:
    """Decode a webhook payload into a :class:`ConversationEvent`.

    Args:
        raw: JSON body as received by the webhook.

    Returns:
        The decoded envelope; unrecognised items are kept as ``UnhandledItem``.

    Raises:
        DecodeError: The envelope itself is not valid JSON or has the wrong shape.

    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError("malformed conversation event JSON") from exc
    if not isinstance(payload, dict):
        raise DecodeError("conversation event must be a JSON object")
    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(f"invalid conversation event envelope: {exc.error_count()} error(s)") from exc

    return ConversationEvent(
        action=envelope.action or "",
        request_id=envelope.request_id or "",
        user_id=envelope.user_id or "",
        message=envelope.message,
        body=[decode_item(item) for item in envelope.body or []],
    )


def decode_item(data: object) -> ResponseItem:
    """Decode a single body item by peeking at its ``uiType`` discriminator."""
    if not isinstance(data, dict):
        return UnhandledItem()
    ui_type = data.get("uiType")
    schema = _ITEM_SCHEMAS.get(ui_type) if isinstance(ui_type, str) else None
    if schema is None:
        return UnhandledItem(ui_type=ui_type if isinstance(ui_type, str) else "")
    try:
        item = schema.model_validate(data)
    except ValidationError:
        logger.warning("Dropping malformed %s item", ui_type)
        return UnhandledItem(ui_type=ui_type)
    if isinstance(item, OutputCard):
        item.card = _decode_card(item)
    return item  # type: ignore[return-value]


def _decode_card(card: OutputCard) -> CardPayload | None:
    """Decode the nested card payload selected by ``templateName``."""
    schema = _CARD_SCHEMAS.get(card.template_name)
    if schema is None:
        return None
    try:
        return schema.model_validate(json.loads(card.data))  # type: ignore[return-value]
    except (ValueError, ValidationError):
        logger.warning("Dropping OutputCard with undecodable %r data", card.template_name)
        return None
