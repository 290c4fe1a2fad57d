from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

import discord

from core.config import AppConfig
from core.errors import ValidationError, WhatsAppUnavailableError
from core.logging import instance_logger
from services.channel_manager import TicketChannelManager
from services.contacts import ContactBook
from services.instance import Instance, InstanceOptions
from services.relay import WhatsAppRelay
from services.ticket_lifecycle import TicketLifecycle
from services.transcript_service import TranscriptService
from services.vouch_service import VouchService
from services.whatsapp import BridgeWhatsAppSession, WhatsAppSession
from storage.config_store import ConfigStore, identity_subset
from utils.constants import (
    CHANNEL_IDENTITY_FIELDS,
    INSTANCE_STATUS_ACTIVE,
    INSTANCE_STATUS_INACTIVE,
    INSTANCE_SUBDIRS,
    QR_TIMEOUT,
)

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[str, Path], WhatsAppSession]
PairingResult = str | None


class InstanceManager:
    """The one registry of guild -> :class:`Instance`.

    Live instances carry a WhatsApp session and a ticket lifecycle. Lookups that
    miss the live map fall back to a read-only view built from the config store.
    """

    def __init__(
        self,
        config: AppConfig,
        store: ConfigStore,
        client: discord.Client | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self.session_factory = session_factory or self._bridge_session
        self.instances: dict[str, Instance] = {}

    def _bridge_session(self, instance_id: str, auth_dir: Path) -> WhatsAppSession:
        return BridgeWhatsAppSession(instance_id, self.config.whatsapp, auth_dir)

    # lookup

    def get_by_guild_id(self, guild_id: int | str) -> Instance | None:
        key = str(guild_id)
        live = self.instances.get(key)
        if live is not None:
            return live
        for instance in self.instances.values():
            if instance.guild_id == key:
                return instance

        for instance_id, identity in self.store.list_all().items():
            if instance_id == key or str(identity.get("guildId")) == key:
                return Instance.from_identity(
                    instance_id, identity, self.store.load(instance_id), temporary=True
                )
        return None

    def live_instance(self, guild_id: int | str) -> Instance | None:
        instance = self.get_by_guild_id(guild_id)
        if instance is None or not instance.is_live():
            return None
        return instance

    # creation

    def _prepare_directories(self, instance_id: str) -> Path:
        root = self.store.instance_dir(instance_id)
        for name in INSTANCE_SUBDIRS:
            (root / name).mkdir(parents=True, exist_ok=True)
        return root

    def _build_runtime(self, instance: Instance) -> Instance:
        if self.client is None:
            raise RuntimeError("Discord client is not attached to the instance manager")
        root = self._prepare_directories(instance.instance_id)
        instance.directory = root
        instance.is_temporary = False
        instance.channels = TicketChannelManager(root)
        instance.contacts = ContactBook(root)
        instance.transcripts = TranscriptService(instance, self.client, root / "transcripts")
        instance.lifecycle = TicketLifecycle(
            instance,
            self.client,
            instance.channels,
            instance.transcripts,
            instance.contacts,
            self.config.tickets,
        )
        instance.relay = WhatsAppRelay(instance, VouchService(instance, self.client))
        instance.session = self.session_factory(instance.instance_id, root / "auth")
        self._wire_session(instance)
        return instance

    def _wire_session(self, instance: Instance) -> None:
        session = instance.session
        log = instance_logger(__name__, instance.instance_id)

        async def on_qr(qr: str) -> None:
            log.info("New QR code received")
            instance.resolve_pairing(qr)

        async def on_ready() -> None:
            log.info("WhatsApp session ready")
            instance.resolve_pairing(None)
            if instance.status != INSTANCE_STATUS_ACTIVE:
                instance.status = INSTANCE_STATUS_ACTIVE
                self.store.save(instance.instance_id, {"instanceStatus": INSTANCE_STATUS_ACTIVE})

        async def on_disconnected(reason: str | None) -> None:
            log.warning("WhatsApp session disconnected: %s", reason)

        session.on_qr(on_qr)
        session.on_ready(on_ready)
        session.on_disconnected(on_disconnected)
        session.on_message(instance.relay.handle_incoming)

    async def create_instance(self, options: InstanceOptions) -> Instance:
        if not options.guild_id:
            raise ValidationError("A guild id is required.")
        instance_id = str(options.guild_id)
        identity = options.identity()

        live = self.instances.get(instance_id)
        if live is None:
            settings = self.store.load(instance_id)
            live = self._build_runtime(Instance.from_identity(instance_id, identity, settings))
            self.instances[instance_id] = live
            LOGGER.info("Created instance %s", instance_id)
        live.apply_identity(identity)
        live.status = INSTANCE_STATUS_ACTIVE

        self.store.register(instance_id, identity)
        persisted: dict[str, Any] = {
            **identity_subset(identity, CHANNEL_IDENTITY_FIELDS),
            "instanceStatus": INSTANCE_STATUS_ACTIVE,
        }
        if options.custom_settings:
            persisted.update(options.custom_settings)
            live.custom_settings.update(options.custom_settings)
        self.store.save(instance_id, persisted)
        return live

    def save_instance_settings(self, instance_id: str, partial: dict[str, Any]) -> bool:
        instance_id = str(instance_id)
        saved = self.store.save(instance_id, partial)
        live = self.instances.get(instance_id)
        if live is not None:
            live.apply_identity(partial)
            live.custom_settings.update(
                {key: value for key, value in partial.items() if key not in CHANNEL_IDENTITY_FIELDS and key != "instanceStatus"}
            )
        return saved

    # pairing

    async def _await_pairing(self, instance: Instance, show_qr: bool, timeout: float) -> PairingResult:
        waiter = instance.new_pairing_waiter()
        try:
            if not await instance.session.connect(show_qr=show_qr):
                raise WhatsAppUnavailableError("The WhatsApp bridge did not accept the connection request.")
            if instance.is_connected():
                return None
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Pairing for instance %s timed out after %ss", instance.instance_id, timeout)
            return QR_TIMEOUT
        finally:
            instance.discard_pairing_waiter(waiter)

    async def generate_qr_code(self, options: InstanceOptions) -> PairingResult:
        """Return a QR payload to scan, ``None`` when already linked, or ``QR_TIMEOUT``."""
        if not options.guild_id or not options.category_id:
            raise ValidationError("A guild and a ticket category are required before linking WhatsApp.")
        if self.client is None:
            raise RuntimeError("Discord client is not attached to the instance manager")

        existing = self.instances.get(str(options.guild_id))
        if existing is not None and existing.is_connected():
            return None
        instance = await self.create_instance(options)
        if existing is not None:
            await instance.session.disconnect(logout=False)
        return await self._await_pairing(instance, True, self.config.whatsapp.qr_timeout_seconds)

    # teardown

    def _wipe_auth(self, instance_id: str) -> None:
        auth_dir = self.store.instance_dir(instance_id) / "auth"
        try:
            shutil.rmtree(auth_dir)
        except FileNotFoundError:
            return
        except OSError:
            LOGGER.warning("Could not fully remove auth material in %s", auth_dir, exc_info=True)

    async def disconnect(self, guild_id: int | str, full_cleanup: bool) -> bool:
        instance = self.get_by_guild_id(guild_id)
        if instance is None:
            return False

        if instance.session is not None:
            await instance.session.disconnect(logout=True)

        if full_cleanup:
            if instance.lifecycle is not None:
                await instance.lifecycle.shutdown()
            self.instances.pop(instance.instance_id, None)
            removed = self.store.remove(instance.instance_id)
            self._wipe_auth(instance.instance_id)
            LOGGER.info("Removed instance %s (full cleanup)", instance.instance_id)
            return removed

        self._wipe_auth(instance.instance_id)
        instance.status = INSTANCE_STATUS_INACTIVE
        saved = self.store.save(instance.instance_id, {"instanceStatus": INSTANCE_STATUS_INACTIVE})
        LOGGER.info("Unlinked WhatsApp for instance %s; settings kept", instance.instance_id)
        return saved

    async def stop_service(self, guild_id: int | str) -> bool:
        instance = self.get_by_guild_id(guild_id)
        if instance is None:
            return False
        if instance.session is not None:
            await instance.session.disconnect(logout=False)
        instance.status = INSTANCE_STATUS_INACTIVE
        LOGGER.info("Stopped service for instance %s; auth kept", instance.instance_id)
        return self.store.save(instance.instance_id, {"instanceStatus": INSTANCE_STATUS_INACTIVE})

    async def reconnect(self, guild_id: int | str) -> PairingResult:
        """Try the stored WhatsApp auth first, then fall back to a fresh QR."""
        instance = self.get_by_guild_id(guild_id)
        if instance is None:
            return None
        if not instance.is_live():
            instance = self._build_runtime(instance)
            self.instances[instance.instance_id] = instance
        if instance.is_connected():
            return None

        outcome = await self._await_pairing(instance, False, self.config.whatsapp.reconnect_timeout_seconds)
        if outcome is None:
            return None
        LOGGER.info("Stored auth for instance %s was not accepted; requesting a new QR", instance.instance_id)
        await instance.session.disconnect(logout=False)
        return await self._await_pairing(instance, True, self.config.whatsapp.qr_timeout_seconds)

    # fleet

    @staticmethod
    def _has_auth(instance: Instance) -> bool:
        auth_dir = instance.directory / "auth" if instance.directory else None
        return bool(auth_dir and auth_dir.is_dir() and any(auth_dir.iterdir()))

    async def initialize_all_instances(self, client: discord.Client | None = None) -> int:
        if client is not None:
            self.client = client
        connected = 0
        for instance_id, identity in self.store.list_all().items():
            try:
                if instance_id in self.instances:
                    continue
                settings = self.store.load(instance_id)
                instance = self._build_runtime(Instance.from_identity(instance_id, identity, settings))
                self.instances[instance_id] = instance
                await instance.lifecycle.resume_interrupted_closes()

                if instance.status == INSTANCE_STATUS_INACTIVE:
                    LOGGER.info("Instance %s is inactive; not connecting", instance_id)
                    continue
                if not self._has_auth(instance):
                    LOGGER.info("Instance %s has no WhatsApp auth yet; waiting for /setup", instance_id)
                    continue
                if await instance.session.connect(show_qr=False):
                    connected += 1
            except Exception:
                LOGGER.exception("Failed to initialize instance %s", instance_id)
        LOGGER.info("Initialized %s instances (%s connecting)", len(self.instances), connected)
        return connected

    async def shutdown(self) -> None:
        for instance_id, instance in list(self.instances.items()):
            try:
                if instance.lifecycle is not None:
                    await instance.lifecycle.shutdown()
                if instance.session is not None:
                    await instance.session.disconnect(logout=False)
            except Exception:
                LOGGER.exception("Failed to shut down instance %s", instance_id)

    def status_report(self, guild_id: int | str | None = None) -> list[dict[str, Any]]:
        if guild_id is not None:
            instance = self.get_by_guild_id(guild_id)
            candidates = [instance] if instance is not None else []
        else:
            candidates = list(self.instances.values())
        return [
            {
                "instance_id": instance.instance_id,
                "guild_id": instance.guild_id,
                "category_id": instance.category_id,
                "transcript_channel_id": instance.transcript_channel_id,
                "vouch_channel_id": instance.vouch_channel_id,
                "status": instance.status,
                "connected": instance.is_connected(),
                "temporary": instance.is_temporary,
                "open_tickets": instance.lifecycle.open_ticket_count() if instance.lifecycle else 0,
                "pending_qr": instance.current_qr() is not None,
            }
            for instance in candidates
        ]
