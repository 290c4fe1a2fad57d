from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import discord

from core.errors import BotError, InstanceNotFoundError, PermissionDeniedError, send_error_response
from utils.constants import CLOSE_BUTTON_PREFIX, EDIT_BUTTON_PREFIX
from utils.decorators import is_staff
from utils.embeds import success_embed

if TYPE_CHECKING:
    from services.ticket_lifecycle import TicketLifecycle

LOGGER = logging.getLogger(__name__)


def _lifecycle_for(interaction: discord.Interaction[Any]) -> TicketLifecycle:
    if not interaction.guild or not isinstance(interaction.user, discord.Member):
        raise InstanceNotFoundError()
    if not is_staff(interaction.user):
        raise PermissionDeniedError()
    manager = interaction.client.instance_manager
    instance = manager.get_by_guild_id(interaction.guild.id)
    if instance is None or not instance.is_live():
        raise InstanceNotFoundError()
    return instance.lifecycle


class EditContactModal(discord.ui.Modal, title="Edit Contact"):
    contact_name = discord.ui.TextInput(
        label="Contact name",
        placeholder="How this contact should appear",
        max_length=80,
        required=True,
    )

    def __init__(self, lifecycle: TicketLifecycle, channel_id: int, current_name: str | None) -> None:
        super().__init__(timeout=300)
        self.lifecycle = lifecycle
        self.channel_id = channel_id
        if current_name:
            self.contact_name.default = current_name

    async def on_submit(self, interaction: discord.Interaction) -> None:
        new_name = str(self.contact_name).strip()
        await self.lifecycle.rename_contact(self.channel_id, new_name)
        await interaction.response.send_message(
            embed=success_embed(f"Contact renamed to **{new_name}**."), ephemeral=True
        )

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        if isinstance(error, BotError):
            await send_error_response(interaction, error.user_message)
            return
        LOGGER.exception("Edit contact modal failed", exc_info=error)
        await send_error_response(interaction, "Could not update the contact.")


class CloseTicketButton(
    discord.ui.DynamicItem[discord.ui.Button],
    template=CLOSE_BUTTON_PREFIX + r"(?P<channel_id>\d+)",
):
    def __init__(self, channel_id: int) -> None:
        super().__init__(
            discord.ui.Button(
                label="Close",
                style=discord.ButtonStyle.danger,
                emoji="🔒",
                custom_id=f"{CLOSE_BUTTON_PREFIX}{channel_id}",
            )
        )
        self.channel_id = channel_id

    @classmethod
    async def from_custom_id(
        cls, interaction: discord.Interaction, item: discord.ui.Button, match: re.Match[str]
    ) -> CloseTicketButton:
        return cls(int(match["channel_id"]))

    async def callback(self, interaction: discord.Interaction) -> None:
        try:
            lifecycle = _lifecycle_for(interaction)
        except BotError as exc:
            await send_error_response(interaction, exc.user_message)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        outcome = await lifecycle.close_ticket(self.channel_id, closed_by=interaction.user)
        await interaction.followup.send(outcome.describe(), ephemeral=True)


class EditContactButton(
    discord.ui.DynamicItem[discord.ui.Button],
    template=EDIT_BUTTON_PREFIX + r"(?P<phone>\d+)",
):
    def __init__(self, phone: str) -> None:
        super().__init__(
            discord.ui.Button(
                label="Edit",
                style=discord.ButtonStyle.secondary,
                emoji="✏️",
                custom_id=f"{EDIT_BUTTON_PREFIX}{phone}",
            )
        )
        self.phone = phone

    @classmethod
    async def from_custom_id(
        cls, interaction: discord.Interaction, item: discord.ui.Button, match: re.Match[str]
    ) -> EditContactButton:
        return cls(match["phone"])

    async def callback(self, interaction: discord.Interaction) -> None:
        try:
            lifecycle = _lifecycle_for(interaction)
        except BotError as exc:
            await send_error_response(interaction, exc.user_message)
            return
        channel_id = lifecycle.channels.get_channel_id(self.phone)
        if channel_id is None:
            await send_error_response(interaction, "This ticket is no longer active.")
            return
        await interaction.response.send_modal(
            EditContactModal(lifecycle, int(channel_id), lifecycle.contacts.get(self.phone))
        )


def build_ticket_controls(channel_id: int, phone: str) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(EditContactButton(phone))
    view.add_item(CloseTicketButton(channel_id))
    return view
