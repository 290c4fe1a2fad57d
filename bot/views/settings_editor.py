from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import BotError, send_error_response
from utils.constants import MESSAGE_TEMPLATE_KEYS

if TYPE_CHECKING:
    from core.bot import BridgeBot
    from services.instance import Instance

LOGGER = logging.getLogger(__name__)

TEMPLATE_HINT = "Placeholders: {name}, {phoneNumber}"


class TemplateModal(discord.ui.Modal):
    def __init__(self, bot: BridgeBot, instance: Instance, key: str) -> None:
        super().__init__(title=f"Edit: {MESSAGE_TEMPLATE_KEYS[key]}"[:45], timeout=600)
        self.bot = bot
        self.instance = instance
        self.key = key
        self.template = discord.ui.TextInput(
            label=TEMPLATE_HINT,
            style=discord.TextStyle.long,
            default=str(instance.setting(key) or "")[:2000],
            max_length=2000,
            required=True,
        )
        self.add_item(self.template)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        value = str(self.template).strip()
        saved = self.bot.instance_manager.save_instance_settings(self.instance.instance_id, {self.key: value})
        if not saved:
            await send_error_response(interaction, "Settings could not be written. Check the bot logs.")
            return
        await interaction.response.send_message(
            f"Updated **{MESSAGE_TEMPLATE_KEYS[self.key]}**.", ephemeral=True
        )

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception("Template modal failed", exc_info=error)
        await send_error_response(interaction, "Could not save the message.")


class TemplateSelect(discord.ui.Select["EditMessagesView"]):
    def __init__(self) -> None:
        super().__init__(
            placeholder="Choose a message to edit",
            options=[
                discord.SelectOption(label=label, value=key) for key, label in MESSAGE_TEMPLATE_KEYS.items()
            ],
        )

    async def callback(self, interaction: discord.Interaction) -> None:
        view = self.view
        await interaction.response.send_modal(TemplateModal(view.bot, view.instance, self.values[0]))


class EditMessagesView(discord.ui.View):
    def __init__(self, bot: BridgeBot, instance: Instance) -> None:
        super().__init__(timeout=600)
        self.bot = bot
        self.instance = instance
        self.add_item(TemplateSelect())
