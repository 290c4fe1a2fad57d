from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import BotError, send_error_response
from services.setup_sessions import SetupSession
from utils.constants import DEFAULT_SETTINGS, QR_TIMEOUT
from utils.embeds import make_embed, qr_embed, success_embed

if TYPE_CHECKING:
    from core.bot import BridgeBot

LOGGER = logging.getLogger(__name__)

_SETUP_MESSAGE_KEYS = (
    ("welcomeMessage", "Welcome (asks for a name)"),
    ("introMessage", "Intro (after the name)"),
    ("reopenTicketMessage", "Returning contact"),
    ("newTicketMessage", "New ticket (shown in Discord)"),
    ("closingMessage", "Closing"),
)


def setup_summary_embed(session: SetupSession) -> discord.Embed:
    def _mention(value: str | None, fallback: str) -> str:
        return f"<#{value}>" if value else fallback

    embed = make_embed(
        "WhatsApp Bridge Setup",
        "Pick where tickets live, then link WhatsApp.",
    )
    embed.add_field(name="Ticket category", value=_mention(session.category_id, "required"), inline=False)
    embed.add_field(name="Transcripts", value=_mention(session.transcript_channel_id, "disabled"), inline=True)
    embed.add_field(name="Vouches", value=_mention(session.vouch_channel_id, "disabled"), inline=True)
    customised = ", ".join(sorted(session.custom_settings)) or "defaults"
    embed.add_field(name="Messages", value=customised, inline=False)
    return embed


class SetupMessagesModal(discord.ui.Modal, title="Customize Messages"):
    def __init__(self, bot: BridgeBot, guild_id: int, current: dict[str, str]) -> None:
        super().__init__(timeout=600)
        self.bot = bot
        self.guild_id = guild_id
        self.inputs: dict[str, discord.ui.TextInput] = {}
        for key, label in _SETUP_MESSAGE_KEYS:
            field = discord.ui.TextInput(
                label=label,
                style=discord.TextStyle.long,
                default=str(current.get(key, DEFAULT_SETTINGS[key]))[:1000],
                max_length=1000,
                required=True,
            )
            self.inputs[key] = field
            self.add_item(field)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        changes = {
            key: str(field).strip()
            for key, field in self.inputs.items()
            if str(field).strip() and str(field).strip() != DEFAULT_SETTINGS[key]
        }
        session = await self.bot.setup_sessions.set_custom_settings(self.guild_id, changes)
        await interaction.response.edit_message(embed=setup_summary_embed(session))

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception("Setup message modal failed", exc_info=error)
        await send_error_response(interaction, "Could not save the messages.")


class SetupWizardView(discord.ui.View):
    def __init__(self, bot: BridgeBot, guild_id: int) -> None:
        super().__init__(timeout=bot.config.tickets.setup_session_ttl_seconds)
        self.bot = bot
        self.guild_id = guild_id

    async def _remember(self, interaction: discord.Interaction, **changes: str | None) -> None:
        session = await self.bot.setup_sessions.update(self.guild_id, **changes)
        await interaction.response.edit_message(embed=setup_summary_embed(session), view=self)

    @discord.ui.select(
        cls=discord.ui.ChannelSelect,
        channel_types=[discord.ChannelType.category],
        placeholder="Ticket category",
        min_values=1,
        max_values=1,
        row=0,
    )
    async def category_select(self, interaction: discord.Interaction, select: discord.ui.ChannelSelect) -> None:
        await self._remember(interaction, category_id=str(select.values[0].id))

    @discord.ui.select(
        cls=discord.ui.ChannelSelect,
        channel_types=[discord.ChannelType.text],
        placeholder="Transcript channel (optional)",
        min_values=0,
        max_values=1,
        row=1,
    )
    async def transcript_select(self, interaction: discord.Interaction, select: discord.ui.ChannelSelect) -> None:
        value = str(select.values[0].id) if select.values else None
        await self._remember(interaction, transcript_channel_id=value)

    @discord.ui.select(
        cls=discord.ui.ChannelSelect,
        channel_types=[discord.ChannelType.text],
        placeholder="Vouch channel (optional)",
        min_values=0,
        max_values=1,
        row=2,
    )
    async def vouch_select(self, interaction: discord.Interaction, select: discord.ui.ChannelSelect) -> None:
        value = str(select.values[0].id) if select.values else None
        await self._remember(interaction, vouch_channel_id=value)

    @discord.ui.button(label="Customize messages", style=discord.ButtonStyle.secondary, emoji="✏️", row=3)
    async def customize(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        session = await self.bot.setup_sessions.require(self.guild_id)
        await interaction.response.send_modal(SetupMessagesModal(self.bot, self.guild_id, session.custom_settings))

    @discord.ui.button(label="Link WhatsApp", style=discord.ButtonStyle.success, emoji="📱", row=3)
    async def finish(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        session = await self.bot.setup_sessions.require(self.guild_id)
        options = session.to_options()
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await self.bot.instance_manager.generate_qr_code(options)
        await self.bot.setup_sessions.discard(self.guild_id)
        self.stop()

        timeout = self.bot.config.whatsapp.qr_timeout_seconds
        if result is None:
            await interaction.followup.send(embed=success_embed("WhatsApp is linked and the bridge is live."), ephemeral=True)
        elif result == QR_TIMEOUT:
            await interaction.followup.send(
                embed=make_embed("Still waiting", "WhatsApp did not answer in time. Try `/reconnect`."),
                ephemeral=True,
            )
        else:
            await interaction.followup.send(embed=qr_embed(result, timeout), ephemeral=True)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.danger, row=3)
    async def cancel(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        await self.bot.setup_sessions.discard(self.guild_id)
        self.stop()
        await interaction.response.edit_message(embed=make_embed("Setup cancelled", "Nothing was changed."), view=None)

    async def on_timeout(self) -> None:
        await self.bot.setup_sessions.discard(self.guild_id)

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception("Setup wizard action failed", exc_info=error)
        await send_error_response(interaction, "Setup failed due to an unexpected error.")
