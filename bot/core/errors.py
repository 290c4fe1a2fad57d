from __future__ import annotations

import logging
from dataclasses import dataclass

import discord
from discord import app_commands
from discord.ext import commands

LOGGER = logging.getLogger(__name__)


class BotError(RuntimeError):
    """Expected failure whose ``user_message`` is safe to show in Discord."""

    user_message: str = "An unexpected error occurred."


@dataclass(slots=True)
class PermissionDeniedError(BotError, app_commands.CheckFailure):
    user_message: str = "You do not have permission to run this action."


@dataclass(slots=True)
class InstanceNotFoundError(BotError):
    user_message: str = "No WhatsApp bridge is configured for this server. Run `/setup` first."


@dataclass(slots=True)
class CategoryNotConfiguredError(BotError):
    user_message: str = "The ticket category for this server is missing. Run `/setup` again."


@dataclass(slots=True)
class TicketCreationError(BotError):
    user_message: str = "The ticket channel could not be created."


@dataclass(slots=True)
class TicketNotFoundError(BotError):
    user_message: str = "This channel is not an active WhatsApp ticket."


@dataclass(slots=True)
class TicketStateError(BotError):
    user_message: str = "The ticket is not in a valid state for this action."


@dataclass(slots=True)
class ValidationError(BotError):
    user_message: str = "The provided input is not valid."


@dataclass(slots=True)
class WhatsAppUnavailableError(BotError):
    user_message: str = "WhatsApp is not connected for this server."


async def send_error_response(target: discord.Interaction[commands.Bot], message: str) -> None:
    embed = discord.Embed(title="Error", description=message, color=discord.Color.red())
    try:
        if target.response.is_done():
            await target.followup.send(embed=embed, ephemeral=True)
        else:
            await target.response.send_message(embed=embed, ephemeral=True)
    except discord.HTTPException:
        LOGGER.warning("Could not deliver error message to interaction %s", target.id)


def _unwrap(error: Exception) -> Exception:
    original = getattr(error, "original", None)
    return original if isinstance(original, Exception) else error


def _describe(interaction: discord.Interaction[commands.Bot]) -> tuple[object, object, object]:
    return (
        getattr(interaction.command, "qualified_name", None),
        getattr(interaction.guild, "id", None),
        getattr(interaction.user, "id", None),
    )


async def handle_app_command_error(
    interaction: discord.Interaction[commands.Bot], error: app_commands.AppCommandError
) -> None:
    cause = _unwrap(error)
    if isinstance(cause, BotError):
        LOGGER.warning("Command %s in guild %s by %s rejected: %s", *_describe(interaction), cause.user_message)
        await send_error_response(interaction, cause.user_message)
        return
    if isinstance(error, app_commands.NoPrivateMessage):
        await send_error_response(interaction, "This command only works inside a server.")
        return
    if isinstance(error, app_commands.CheckFailure):
        await send_error_response(interaction, "You are not allowed to use this command.")
        return

    LOGGER.exception("Command %s in guild %s by %s failed", *_describe(interaction), exc_info=error)
    await send_error_response(interaction, "Something went wrong while handling that command.")
