from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

import discord
from discord import app_commands
from discord.ext import commands

from core.bot import BridgeBot
from core.errors import InstanceNotFoundError, ValidationError
from services.instance import Instance
from utils.constants import FEATURE_FLAGS, QR_TIMEOUT
from utils.decorators import guild_admin_only
from utils.embeds import error_embed, make_embed, qr_embed, status_embed, success_embed
from views.settings_editor import EditMessagesView
from views.setup_wizard import SetupWizardView, setup_summary_embed

LOGGER = logging.getLogger(__name__)


class ConfirmActionView(discord.ui.View):
    def __init__(self, action: Callable[[discord.Interaction], Awaitable[None]], author_id: int) -> None:
        super().__init__(timeout=60)
        self.action = action
        self.author_id = author_id

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return interaction.user.id == self.author_id

    @discord.ui.button(label="Confirm", style=discord.ButtonStyle.danger)
    async def confirm(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        self.stop()
        await self.action(interaction)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        self.stop()
        await interaction.response.edit_message(embed=make_embed("Cancelled", "Nothing was changed."), view=None)


class AdminCog(commands.Cog):
    special_channel = app_commands.Group(
        name="special-channel",
        description="Channels whose mention is replaced by a custom text on WhatsApp.",
        guild_only=True,
    )

    def __init__(self, bot: BridgeBot) -> None:
        self.bot = bot

    def _instance(self, interaction: discord.Interaction) -> Instance:
        if interaction.guild is None:
            raise ValidationError("This command only works inside a server.")
        instance = self.bot.instance_manager.get_by_guild_id(interaction.guild.id)
        if instance is None:
            raise InstanceNotFoundError()
        return instance

    async def _reply_pairing(self, interaction: discord.Interaction, result: str | None) -> None:
        if result is None:
            await interaction.followup.send(embed=success_embed("WhatsApp is connected."), ephemeral=True)
        elif result == QR_TIMEOUT:
            await interaction.followup.send(
                embed=error_embed("WhatsApp did not respond in time. Try again in a moment."), ephemeral=True
            )
        else:
            await interaction.followup.send(
                embed=qr_embed(result, self.bot.config.whatsapp.qr_timeout_seconds), ephemeral=True
            )

    @app_commands.command(name="setup", description="Configure the WhatsApp bridge for this server.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def setup(self, interaction: discord.Interaction) -> None:
        guild_id = interaction.guild.id  # type: ignore[union-attr]
        session = await self.bot.setup_sessions.start(guild_id, interaction.user.id)
        existing = self.bot.instance_manager.get_by_guild_id(guild_id)
        if existing is not None:
            session = await self.bot.setup_sessions.update(
                guild_id,
                category_id=existing.category_id,
                transcript_channel_id=existing.transcript_channel_id,
                vouch_channel_id=existing.vouch_channel_id,
            )
        await interaction.response.send_message(
            embed=setup_summary_embed(session),
            view=SetupWizardView(self.bot, guild_id),
            ephemeral=True,
        )

    @app_commands.command(name="status", description="Show the WhatsApp bridge status.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def status(self, interaction: discord.Interaction) -> None:
        rows = self.bot.instance_manager.status_report(interaction.guild.id)  # type: ignore[union-attr]
        await interaction.response.send_message(embed=status_embed(rows), ephemeral=True)

    @app_commands.command(name="disconnect", description="Remove the bridge completely from this server.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def disconnect(self, interaction: discord.Interaction) -> None:
        instance = self._instance(interaction)

        async def _run(confirm_interaction: discord.Interaction) -> None:
            await confirm_interaction.response.defer()
            removed = await self.bot.instance_manager.disconnect(instance.guild_id, full_cleanup=True)
            embed = success_embed("Bridge removed. Run `/setup` to start over.") if removed else error_embed(
                "The bridge was stopped but its configuration could not be removed."
            )
            await confirm_interaction.edit_original_response(embed=embed, view=None)

        await interaction.response.send_message(
            embed=make_embed("Remove bridge?", "WhatsApp is logged out and this server's bridge configuration is deleted."),
            view=ConfirmActionView(_run, interaction.user.id),
            ephemeral=True,
        )

    @app_commands.command(name="disconnect-whatsapp", description="Unlink WhatsApp but keep all settings.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def disconnect_whatsapp(self, interaction: discord.Interaction) -> None:
        instance = self._instance(interaction)

        async def _run(confirm_interaction: discord.Interaction) -> None:
            await confirm_interaction.response.defer()
            await self.bot.instance_manager.disconnect(instance.guild_id, full_cleanup=False)
            await confirm_interaction.edit_original_response(
                embed=success_embed("WhatsApp unlinked. Settings were kept; `/reconnect` links a phone again."),
                view=None,
            )

        await interaction.response.send_message(
            embed=make_embed("Unlink WhatsApp?", "The linked phone is logged out. Tickets and settings stay."),
            view=ConfirmActionView(_run, interaction.user.id),
            ephemeral=True,
        )

    @app_commands.command(name="disconnect-service", description="Pause the bridge without unlinking WhatsApp.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def disconnect_service(self, interaction: discord.Interaction) -> None:
        instance = self._instance(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.instance_manager.stop_service(instance.guild_id)
        await interaction.followup.send(
            embed=success_embed("Bridge paused. `/reconnect` resumes it with the same WhatsApp account."),
            ephemeral=True,
        )

    @app_commands.command(name="reconnect", description="Reconnect WhatsApp, asking for a new QR only if needed.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def reconnect(self, interaction: discord.Interaction) -> None:
        instance = self._instance(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await self.bot.instance_manager.reconnect(instance.guild_id)
        await self._reply_pairing(interaction, result)

    @app_commands.command(name="edit-messages", description="Edit the messages sent to WhatsApp contacts.")
    @app_commands.guild_only()
    @guild_admin_only()
    async def edit_messages(self, interaction: discord.Interaction) -> None:
        instance = self._instance(interaction)
        await interaction.response.send_message(
            "Pick the message to edit:", view=EditMessagesView(self.bot, instance), ephemeral=True
        )

    @app_commands.command(name="toggle", description="Turn a bridge feature on or off.")
    @app_commands.guild_only()
    @guild_admin_only()
    @app_commands.choices(
        feature=[app_commands.Choice(name=label, value=key) for key, label in FEATURE_FLAGS.items()]
    )
    async def toggle(self, interaction: discord.Interaction, feature: app_commands.Choice[str]) -> None:
        instance = self._instance(interaction)
        enabled = not bool(instance.setting(feature.value))
        if not self.bot.instance_manager.save_instance_settings(instance.instance_id, {feature.value: enabled}):
            raise ValidationError("Settings could not be written.")
        state = "enabled" if enabled else "disabled"
        await interaction.response.send_message(embed=success_embed(f"{feature.name} {state}."), ephemeral=True)

    @special_channel.command(name="add", description="Replace mentions of a channel with a custom text.")
    @guild_admin_only()
    async def special_add(
        self, interaction: discord.Interaction, channel: discord.TextChannel, message: app_commands.Range[str, 1, 1000]
    ) -> None:
        instance = self._instance(interaction)
        special = instance.special_channels()
        special[str(channel.id)] = {"message": message}
        self.bot.instance_manager.save_instance_settings(instance.instance_id, {"specialChannels": special})
        await interaction.response.send_message(
            embed=success_embed(f"Mentions of {channel.mention} now read: {message}"), ephemeral=True
        )

    @special_channel.command(name="remove", description="Stop replacing mentions of a channel.")
    @guild_admin_only()
    async def special_remove(self, interaction: discord.Interaction, channel: discord.TextChannel) -> None:
        instance = self._instance(interaction)
        special = instance.special_channels()
        if special.pop(str(channel.id), None) is None:
            raise ValidationError(f"{channel.mention} is not a special channel.")
        self.bot.instance_manager.save_instance_settings(instance.instance_id, {"specialChannels": special})
        await interaction.response.send_message(
            embed=success_embed(f"{channel.mention} is no longer a special channel."), ephemeral=True
        )

    @special_channel.command(name="list", description="List special channels.")
    @guild_admin_only()
    async def special_list(self, interaction: discord.Interaction) -> None:
        special = self._instance(interaction).special_channels()
        lines = [f"<#{channel_id}> → {entry.get('message', '')}" for channel_id, entry in special.items()]
        await interaction.response.send_message(
            embed=make_embed("Special channels", "\n".join(lines) or "None configured."), ephemeral=True
        )


async def setup(bot: BridgeBot) -> None:
    await bot.add_cog(AdminCog(bot))
