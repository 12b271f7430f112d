"""Discord gateway listener that relays DMs and interactions to the bridge."""

import asyncio
import logging
import os
import re
from typing import Any

import discord
import requests
from discord import app_commands
from dotenv import load_dotenv
from va_bridge.models import (
    ActionReply,
    BridgeReply,
    ConnectReply,
    IncomingAttachment,
    IncomingMessage,
)
from va_bridge.render import Action, Card, OutgoingMessage

load_dotenv()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("discord_listener")

DISCORD_BOT_TOKEN = os.environ.get("DISCORD_BOT_TOKEN")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL")
DISCORD_MAX_LEN = 2000
DEFAULT_TIMEOUT_SECONDS = 60.0
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."
CONNECT_COLOR = 0x5865F2
HELP_TEXT = (
    "**ServiceNow Virtual Agent - Slash Command Help**\n"
    "* `/virtualagent connect` - Link your ServiceNow account\n"
    "* `/virtualagent disconnect` - Unlink your ServiceNow account\n"
    "* `/virtualagent help` - Show this help\n"
    "Send me a direct message to talk to the Virtual Agent."
)
DATE_HELP = "YYYY-MM-DD, e.g. 2001-11-04"
TIME_HELP = "HH:MM (24 hour), e.g. 20:04"

if not DISCORD_BOT_TOKEN:
    raise RuntimeError("DISCORD_BOT_TOKEN is required.")  # noqa: TRY003, EM101
if not PUBLIC_BASE_URL:
    raise RuntimeError("PUBLIC_BASE_URL is required.")  # noqa: TRY003, EM101
BRIDGE_URL = PUBLIC_BASE_URL.rstrip("/")
EVENTS_URL = f"{BRIDGE_URL}/events/message"

intents = discord.Intents.default()
intents.message_content = True
client = discord.Client(intents=intents)
tree = app_commands.CommandTree(client)
virtualagent = app_commands.Group(name="virtualagent", description="ServiceNow Virtual Agent commands.")

_MARKDOWN_LINK = re.compile(r"^\[(?P<label>.*)\]\((?P<url>[^)]*)\)$", re.DOTALL)
_BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _chunk_text(text: str, max_len: int = DISCORD_MAX_LEN) -> list[str]:
    if not text:
        return []
    chunks = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break
        split_at = text.rfind("\n", 0, max_len)
        if split_at == -1:
            split_at = text.rfind(" ", 0, max_len)
        if split_at == -1:
            split_at = max_len
        chunks.append(text[:split_at].rstrip())
        text = text[split_at:].lstrip()
    return chunks


def _to_embed(card: Card) -> discord.Embed | None:
    """Convert a bridge card into an embed; cards with no visible content give None."""
    if not (card.title or card.text or card.image_url or card.fields):
        return None
    embed = discord.Embed(description=card.text or None, color=card.color)
    if card.title:
        match = _MARKDOWN_LINK.match(card.title)
        if match:
            embed.title = match.group("label")
            embed.url = match.group("url")
        else:
            embed.title = card.title
    if card.image_url:
        embed.set_image(url=card.image_url)
    for field in card.fields:
        embed.add_field(name=field.title or "\u200b", value=field.value or "\u200b", inline=False)
    return embed


def _to_item(action: Action) -> discord.ui.Item:
    if action.kind == "select":
        return discord.ui.Select(
            custom_id=action.custom_id,
            placeholder=action.label,
            options=[discord.SelectOption(label=option.label, value=option.value) for option in action.options],
        )
    return discord.ui.Button(
        label=action.label,
        custom_id=action.custom_id,
        style=_BUTTON_STYLES.get(action.style, discord.ButtonStyle.primary),
    )


def _build_view(message: OutgoingMessage) -> discord.ui.View | None:
    """Lay out a message's actions; their interactions are routed by ``on_interaction``."""
    if not message.actions:
        return None
    view = discord.ui.View()
    for action in message.actions:
        view.add_item(_to_item(action))
    return view


def _render_message(message: OutgoingMessage) -> dict[str, Any]:
    """Keyword arguments for ``send`` that reproduce ``message``."""
    pretexts = [card.pretext for card in message.cards if card.pretext]
    content = "\n".join([*pretexts, message.text] if message.text else pretexts)
    kwargs: dict[str, Any] = {"content": content or None}
    embeds = [embed for embed in (_to_embed(card) for card in message.cards) if embed is not None]
    if embeds:
        kwargs["embeds"] = embeds
    view = _build_view(message)
    if view is not None:
        kwargs["view"] = view
    return kwargs


def _connect_banner(url: str) -> tuple[discord.Embed, discord.ui.View]:
    view = discord.ui.View()
    view.add_item(discord.ui.Button(label="Connect", style=discord.ButtonStyle.link, url=url))
    embed = discord.Embed(
        title="Connect to ServiceNow",
        description="Use the button below to link your ServiceNow account.",
        color=CONNECT_COLOR,
    )
    return embed, view


def _post_to_bridge(
    path: str,
    payload: dict[str, Any],
    *,
    user_id: str | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """POST ``payload`` to a bridge route and return the decoded JSON body."""
    headers = {"X-User-ID": user_id} if user_id else None
    response = requests.post(f"{BRIDGE_URL}{path}", json=payload, headers=headers, timeout=timeout_seconds)
    response.raise_for_status()
    return response.json()


def _send_to_bridge(
    url: str,
    message: IncomingMessage,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> BridgeReply:
    """Post the normalized message to the bridge and parse its reply."""
    response = requests.post(url, json=message.model_dump(), timeout=timeout_seconds)
    response.raise_for_status()
    return BridgeReply.model_validate(response.json())


def _error_text(exc: Exception) -> str:
    """User-facing text for a failed bridge call."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        try:
            message = exc.response.json().get("message")
        except ValueError:
            message = None
        if message:
            return str(message)
    return GENERIC_ERROR_MESSAGE


def _option_label(message: discord.Message | None, custom_id: str, value: str) -> str:
    """Label of the picked select option, read back from the message components."""
    for row in getattr(message, "components", None) or []:
        for component in getattr(row, "children", []):
            if getattr(component, "custom_id", None) != custom_id:
                continue
            for option in getattr(component, "options", []):
                if option.value == value:
                    return option.label
    return value


def _carousel_label(message: discord.Message | None, position: str, value: str) -> str:
    """Title of the carousel card numbered ``position``, without its number."""
    prefix = f"{position}) "
    for embed in getattr(message, "embeds", None) or []:
        if embed.title and embed.title.startswith(prefix):
            return embed.title[len(prefix) :]
    return value


async def _deliver_replies(channel: discord.abc.Messageable, reply: BridgeReply) -> None:
    for outgoing in reply.messages:
        kwargs = _render_message(outgoing)
        content = kwargs.pop("content")
        parts = _chunk_text(content or "")
        for part in parts[:-1]:
            await channel.send(part)
        if parts or "embeds" in kwargs or "view" in kwargs:
            await channel.send(parts[-1] if parts else None, **kwargs)


# ---------------------------------------------------------------------------
# Date/time modal
# ---------------------------------------------------------------------------


class DateTimeModal(discord.ui.Modal):
    """Collects a date and/or time for a Virtual Agent date prompt."""

    def __init__(self, ui_type: str) -> None:
        super().__init__(title=f"Set {ui_type}")
        self.ui_type = ui_type
        self.date_input: discord.ui.TextInput | None = None
        self.time_input: discord.ui.TextInput | None = None
        if ui_type in ("Date", "DateTime"):
            self.date_input = discord.ui.TextInput(
                label="Date", placeholder=DATE_HELP, min_length=10, max_length=10
            )
            self.add_item(self.date_input)
        if ui_type in ("Time", "DateTime"):
            self.time_input = discord.ui.TextInput(label="Time", placeholder=TIME_HELP, min_length=5, max_length=5)
            self.add_item(self.time_input)

    def payload(self) -> dict[str, str]:
        return {
            "ui_type": self.ui_type,
            "date": self.date_input.value if self.date_input is not None else "",
            "time": self.time_input.value if self.time_input is not None else "",
        }

    async def on_submit(self, interaction: discord.Interaction) -> None:
        """Forward the values; validation errors are shown only to the user."""
        try:
            data = await asyncio.to_thread(
                _post_to_bridge, "/actions/date_time", self.payload(), user_id=str(interaction.user.id)
            )
        except Exception as exc:
            logger.exception("Failed to submit %s", self.ui_type)
            await interaction.response.send_message(_error_text(exc), ephemeral=True)
            return
        reply = ActionReply.model_validate(data)
        if reply.errors:
            await interaction.response.send_message("\n".join(reply.errors.values()), ephemeral=True)
            return
        await interaction.response.send_message(reply.text, ephemeral=True)


# ---------------------------------------------------------------------------
# Slash Commands
# ---------------------------------------------------------------------------


@virtualagent.command(name="connect", description="Link your ServiceNow account.")
async def connect_command(interaction: discord.Interaction) -> None:
    """Send an ephemeral connect banner, or say the account is already linked.

    Args:
        interaction: Discord interaction payload for the slash command.

    Returns:
        None.

    """
    try:
        data = await asyncio.to_thread(_post_to_bridge, "/actions/connect", {}, user_id=str(interaction.user.id))
    except Exception as exc:
        logger.exception("Failed to request a connect link")
        await interaction.response.send_message(_error_text(exc), ephemeral=True)
        return
    reply = ConnectReply.model_validate(data)
    if not reply.url:
        await interaction.response.send_message(reply.text, ephemeral=True)
        return
    embed, view = _connect_banner(reply.url)
    await interaction.response.send_message(embed=embed, view=view, ephemeral=True)


@virtualagent.command(name="disconnect", description="Unlink your ServiceNow account.")
async def disconnect_command(interaction: discord.Interaction) -> None:
    """Start the disconnect confirmation, exactly as typing "disconnect" would."""
    incoming = IncomingMessage(
        provider="discord",
        channel_id=str(interaction.channel_id or ""),
        user_id=str(interaction.user.id),
        content="disconnect",
    )
    try:
        reply = await asyncio.to_thread(_send_to_bridge, EVENTS_URL, incoming)
    except Exception as exc:
        logger.exception("Failed to call bridge")
        await interaction.response.send_message(_error_text(exc), ephemeral=True)
        return
    if not reply.messages:
        await interaction.response.send_message(GENERIC_ERROR_MESSAGE, ephemeral=True)
        return
    first, *rest = reply.messages
    await interaction.response.send_message(ephemeral=True, **_render_message(first))
    for outgoing in rest:
        await interaction.followup.send(ephemeral=True, **_render_message(outgoing))


@virtualagent.command(name="help", description="Show Virtual Agent help.")
async def help_command(interaction: discord.Interaction) -> None:
    await interaction.response.send_message(HELP_TEXT, ephemeral=True)


tree.add_command(virtualagent)


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


async def _relay_action(interaction: discord.Interaction, path: str, payload: dict[str, Any]) -> str:
    """Defer, call the bridge and return the text to show the user."""
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        data = await asyncio.to_thread(_post_to_bridge, path, payload, user_id=str(interaction.user.id))
    except Exception as exc:
        logger.exception("Bridge action %s failed", path)
        return _error_text(exc)
    return ActionReply.model_validate(data).text


async def handle_component(interaction: discord.Interaction) -> None:  # noqa: C901
    """Route a button or select interaction by its custom id."""
    data = interaction.data or {}
    custom_id = str(data.get("custom_id", ""))
    parts = custom_id.split(":", 3)
    if len(parts) < 3:  # noqa: PLR2004
        return
    _, kind, arg = parts[0], parts[1], parts[2]

    if kind == "date":
        await interaction.response.send_modal(DateTimeModal(arg))
        return

    if kind == "options":
        values = data.get("values") or []
        if not values:
            return
        value = str(values[0])
        label = _option_label(interaction.message, custom_id, value)
        text = await _relay_action(interaction, "/actions/options", {"value": value, "label": label})
    elif kind == "carousel":
        value = parts[3] if len(parts) > 3 else ""  # noqa: PLR2004
        label = _carousel_label(interaction.message, arg, value)
        payload = {"value": value, "label": label, "position": arg}
        text = await _relay_action(interaction, "/actions/options", payload)
    elif kind == "disconnect":
        text = await _relay_action(interaction, "/actions/disconnect", {"confirmed": arg == "yes"})
        if interaction.message is not None:
            try:
                await interaction.message.edit(view=None)
            except discord.HTTPException:
                logger.warning("Could not remove disconnect buttons from %s", interaction.message.id)
    else:
        logger.info("Ignoring unknown component %s", custom_id)
        return
    await interaction.followup.send(text, ephemeral=True)


# ---------------------------------------------------------------------------
# Event Handlers
# ---------------------------------------------------------------------------


@client.event
async def on_ready() -> None:
    """Log the bot identity once connected."""
    logger.info("Logged in as %s", client.user)
    try:
        await tree.sync()
    except Exception:
        logger.exception("Failed to sync slash commands")


@client.event
async def on_interaction(interaction: discord.Interaction) -> None:
    """Handle components from any bot message, including ones the bridge posted."""
    if interaction.type != discord.InteractionType.component:
        return
    await handle_component(interaction)


@client.event
async def on_message(message: discord.Message) -> None:
    """Forward DM messages and their attachments to the bridge and post the reply.

    Args:
        message: Incoming Discord message event payload.

    Returns:
        None.

    """
    if not isinstance(message.channel, discord.DMChannel):
        return

    if message.author.bot:
        return

    content = (message.content or "").strip()
    attachments = [
        IncomingAttachment(url=item.url, content_type=item.content_type or "", filename=item.filename)
        for item in getattr(message, "attachments", None) or []
    ]
    if not content and not attachments:
        return

    incoming = IncomingMessage(
        provider="discord",
        channel_id=str(message.channel.id),
        user_id=str(message.author.id),
        content=content,
        message_id=str(message.id),
        attachments=attachments,
    )

    try:
        reply = await asyncio.to_thread(
            _send_to_bridge,
            EVENTS_URL,
            incoming,
        )
    except Exception:
        logger.exception("Failed to call bridge")
        await message.channel.send(GENERIC_ERROR_MESSAGE)
        return

    await _deliver_replies(message.channel, reply)


def main() -> None:
    """Run the Discord gateway client."""
    assert DISCORD_BOT_TOKEN is not None
    client.run(DISCORD_BOT_TOKEN)


if __name__ == "__main__":
    main()
