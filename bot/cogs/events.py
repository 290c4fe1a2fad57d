from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import BridgeBot

LOGGER = logging.getLogger(__name__)


class EventsCog(commands.Cog):
    def __init__(self, bot: BridgeBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not message.guild or not isinstance(message.channel, discord.TextChannel):
            return
        instance = self.bot.instance_manager.live_instance(message.guild.id)
        if instance is None or instance.channels.get_phone(message.channel.id) is None:
            return
        if not await instance.relay.forward_from_discord(message):
            try:
                await message.add_reaction("⚠️")
            except discord.HTTPException:
                LOGGER.debug("Could not flag undelivered message %s", message.id)

    @commands.Cog.listener()
    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel) -> None:
        instance = self.bot.instance_manager.live_instance(channel.guild.id)
        if instance is None:
            return
        await instance.lifecycle.forget_channel(channel.id)

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild) -> None:
        LOGGER.info("Removed from guild %s; its bridge configuration is kept", guild.id)


async def setup(bot: BridgeBot) -> None:
    await bot.add_cog(EventsCog(bot))
