"""Public export surface for ``virtual_agent_api``."""

from virtual_agent_api.client import Client, OAuthProvider, get_client, get_oauth
from virtual_agent_api.events import (
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
    UnhandledItem,
    VideoCard,
    decode_event,
    decode_item,
)
from virtual_agent_api.models import (
    START_CONVERSATION_ACTION,
    ClientConfig,
    DecodeError,
    MessageAttachment,
    MessageBody,
    RemoteUser,
    RequestEnvelope,
    TransportError,
    new_request_id,
)

__all__ = [
    "START_CONVERSATION_ACTION",
    "Client",
    "ClientConfig",
    "ConversationEvent",
    "DecodeError",
    "DefaultDate",
    "GroupedPartsOutputControl",
    "ImageCard",
    "MessageAttachment",
    "MessageBody",
    "OAuthProvider",
    "Option",
    "OutputCard",
    "OutputImage",
    "OutputLink",
    "OutputText",
    "Picker",
    "RecordCard",
    "RemoteUser",
    "RequestEnvelope",
    "ResponseItem",
    "TopicPickerControl",
    "TransportError",
    "UnhandledItem",
    "VideoCard",
    "decode_event",
    "decode_item",
    "get_client",
    "get_oauth",
    "new_request_id",
]
