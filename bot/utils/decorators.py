from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import discord
from discord import app_commands

from core.errors import PermissionDeniedError

F = TypeVar("F", bound=Callable[..., Any])

STAFF_ROLE_NAMES = {"support", "staff", "moderator", "admin"}


def is_staff(member: discord.Member) -> bool:
    if member.guild_permissions.administrator or member.guild_permissions.manage_channels:
        return True
    return any(role.name.lower() in STAFF_ROLE_NAMES for role in member.roles)


def staff_only() -> Callable[[F], F]:
    async def predicate(interaction: discord.Interaction) -> bool:
        if not interaction.guild or not isinstance(interaction.user, discord.Member):
            return False
        if is_staff(interaction.user):
            return True
        raise PermissionDeniedError()

    return app_commands.check(predicate)


def guild_admin_only() -> Callable[[F], F]:
    async def predicate(interaction: discord.Interaction) -> bool:
        member = interaction.user
        if not interaction.guild or not isinstance(member, discord.Member):
            return False
        if member.guild_permissions.administrator:
            return True
        raise PermissionDeniedError("Administrator permission is required for bridge settings.")

    return app_commands.check(predicate)
