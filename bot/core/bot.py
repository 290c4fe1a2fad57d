from __future__ import annotations

import logging
from pathlib import Path

import discord
from discord.ext import commands

from core.config import AppConfig
from core.errors import handle_app_command_error
from services.cache import CacheBackend, build_cache
from services.instance_manager import InstanceManager
from services.setup_sessions import SetupSessionStore
from storage.config_store import ConfigStore

LOGGER = logging.getLogger(__name__)

_ACTIVITY_TYPES = {
    "playing": discord.ActivityType.playing,
    "listening": discord.ActivityType.listening,
    "watching": discord.ActivityType.watching,
    "competing": discord.ActivityType.competing,
}


class BridgeBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.messages = True
        intents.message_content = True

        super().__init__(
            command_prefix=commands.when_mentioned_or(config.discord.prefix),
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(
                everyone=config.discord.allowed_mentions_everyone,
                roles=False,
                users=True,
                replied_user=False,
            ),
            help_command=None,
        )
        self.config = config
        self.cache: CacheBackend | None = None
        self.config_store = ConfigStore(Path(config.storage.data_directory))
        self.instance_manager = InstanceManager(config, self.config_store, client=self)

        # Created during setup_hook once the cache backend is available.
        self.setup_sessions: SetupSessionStore
        self._instances_started = False

    async def setup_hook(self) -> None:
        self.cache = await build_cache(self.config.redis)
        self.setup_sessions = SetupSessionStore(self.cache, self.config.tickets.setup_session_ttl_seconds)

        await self._load_extensions(self.config.enabled_extensions)

        if self.config.discord.sync_commands_on_start:
            synced = await self.tree.sync()
            LOGGER.info("Synced %s application commands", len(synced))

        self.tree.on_error = handle_app_command_error  # type: ignore[assignment]

    async def _load_extensions(self, extension_names: list[str]) -> None:
        for ext in extension_names:
            try:
                await self.load_extension(ext)
                LOGGER.info("Loaded extension: %s", ext)
            except commands.ExtensionAlreadyLoaded:
                LOGGER.warning("Extension already loaded: %s", ext)
            except commands.ExtensionError:
                LOGGER.exception("Failed to load extension: %s", ext)

    def _presence(self) -> discord.BaseActivity:
        name = self.config.discord.status_text
        kind = _ACTIVITY_TYPES.get(self.config.discord.activity_type.lower(), discord.ActivityType.watching)
        if kind is discord.ActivityType.playing:
            return discord.Game(name=name)
        return discord.Activity(type=kind, name=name)

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        await self.change_presence(status=discord.Status.online, activity=self._presence())

        # on_ready fires again after every resume; the fleet only starts once
        if not self._instances_started:
            self._instances_started = True
            await self.instance_manager.initialize_all_instances(self)

    async def close(self) -> None:
        await self.instance_manager.shutdown()
        await super().close()
        if self.cache:
            await self.cache.close()
