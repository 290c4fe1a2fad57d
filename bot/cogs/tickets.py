from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from core.bot import BridgeBot
from core.errors import InstanceNotFoundError, TicketNotFoundError
from services.ticket_lifecycle import TicketLifecycle
from utils.decorators import staff_only
from utils.embeds import success_embed
from views.ticket_controls import CloseTicketButton, EditContactButton

LOGGER = logging.getLogger(__name__)


class TicketsCog(commands.Cog):
    def __init__(self, bot: BridgeBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.bot.add_dynamic_items(CloseTicketButton, EditContactButton)

    async def cog_unload(self) -> None:
        self.bot.remove_dynamic_items(CloseTicketButton, EditContactButton)

    def _lifecycle(self, interaction: discord.Interaction) -> TicketLifecycle:
        if interaction.guild is None:
            raise InstanceNotFoundError()
        instance = self.bot.instance_manager.live_instance(interaction.guild.id)
        if instance is None:
            raise InstanceNotFoundError()
        if instance.channels.get_phone(interaction.channel_id) is None:
            raise TicketNotFoundError()
        return instance.lifecycle

    @app_commands.command(name="close", description="Close this WhatsApp ticket.")
    @app_commands.guild_only()
    @staff_only()
    async def close(self, interaction: discord.Interaction) -> None:
        lifecycle = self._lifecycle(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        outcome = await lifecycle.close_ticket(interaction.channel_id, closed_by=interaction.user)
        await interaction.followup.send(outcome.describe(), ephemeral=True)

    @app_commands.command(name="vouch", description="Ask this contact to leave a vouch on WhatsApp.")
    @app_commands.guild_only()
    @staff_only()
    async def vouch(self, interaction: discord.Interaction) -> None:
        lifecycle = self._lifecycle(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        phone = await lifecycle.send_vouch_request(interaction.channel_id)
        LOGGER.info("Vouch requested from %s by %s", phone, interaction.user.id)
        await interaction.followup.send(embed=success_embed("Vouch request sent."), ephemeral=True)

    @app_commands.command(name="rename", description="Rename the WhatsApp contact of this ticket.")
    @app_commands.guild_only()
    @staff_only()
    async def rename(self, interaction: discord.Interaction, name: app_commands.Range[str, 1, 80]) -> None:
        lifecycle = self._lifecycle(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await lifecycle.rename_contact(interaction.channel_id, name)
        await interaction.followup.send(embed=success_embed(f"Contact renamed to **{name}**."), ephemeral=True)


async def setup(bot: BridgeBot) -> None:
    await bot.add_cog(TicketsCog(bot))
