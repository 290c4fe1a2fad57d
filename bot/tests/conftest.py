from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from core.config import AppConfig, DiscordConfig, StorageConfig, TicketConfig, WhatsAppConfig
from core.errors import WhatsAppUnavailableError
from services.whatsapp import IncomingMessage

GUILD_ID = 111
CATEGORY_ID = 222


def http_error(cls: type[discord.HTTPException], status: int, text: str = "nope") -> discord.HTTPException:
    response = MagicMock()
    response.status = status
    response.reason = text
    return cls(response, text)


def make_channel(channel_id: int, name: str = "ticket") -> MagicMock:
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.name = name
    message = MagicMock()
    message.pin = AsyncMock()
    channel.send = AsyncMock(return_value=message)
    channel.delete = AsyncMock()
    channel.edit = AsyncMock()
    channel.set_permissions = AsyncMock()
    return channel


class FakeDiscord:
    """Just enough of a discord client and guild to open and close ticket channels."""

    def __init__(self, guild_id: int = GUILD_ID, category_id: int = CATEGORY_ID) -> None:
        self._ids = itertools.count(9000)
        self.channels: dict[int, MagicMock] = {}

        self.category = MagicMock(spec=discord.CategoryChannel)
        self.category.id = category_id

        self.guild = MagicMock()
        self.guild.id = guild_id
        self.guild.get_channel.side_effect = lambda cid: self.category if cid == category_id else None
        self.guild.fetch_channel = AsyncMock(side_effect=http_error(discord.NotFound, 404))
        self.guild.create_text_channel = AsyncMock(side_effect=self._create_text_channel)

        self.client = MagicMock()
        self.client.get_guild.side_effect = lambda gid: self.guild if gid == guild_id else None
        self.client.get_channel.side_effect = lambda cid: self.channels.get(cid)
        self.client.fetch_channel = AsyncMock(side_effect=http_error(discord.NotFound, 404))

    async def _create_text_channel(self, name: str, **kwargs: Any) -> MagicMock:
        channel = make_channel(next(self._ids), name)
        self.channels[channel.id] = channel
        return channel

    def add_channel(self, channel_id: int) -> MagicMock:
        channel = make_channel(channel_id)
        self.channels[channel_id] = channel
        return channel


class FakeSession:
    """In-memory WhatsApp session; ``pairing`` decides what happens on connect."""

    def __init__(self, session_id: str = "111", auth_dir: Path | None = None) -> None:
        self.session_id = session_id
        self.auth_dir = auth_dir
        self.connected = False
        self.accept = True
        self.pairing: str | None = "ready"
        self.sent: list[tuple[str, str]] = []
        self.connect_calls: list[bool] = []
        self.disconnect_calls: list[bool] = []
        self._message_handlers: list[Any] = []
        self._ready_handlers: list[Any] = []
        self._disconnect_handlers: list[Any] = []
        self._qr_handlers: list[Any] = []

    async def connect(self, show_qr: bool) -> bool:
        self.connect_calls.append(show_qr)
        if not self.accept:
            return False
        if self.pairing == "ready":
            await self.emit_ready()
        elif self.pairing == "qr" and show_qr:
            await self.emit_qr("QR-PAYLOAD")
        return True

    async def disconnect(self, logout: bool) -> None:
        self.disconnect_calls.append(logout)
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def send_message(self, phone: str, text: str) -> None:
        if not self.connected:
            raise WhatsAppUnavailableError()
        self.sent.append((phone, text))

    def on_message(self, handler: Any) -> None:
        self._message_handlers.append(handler)

    def on_ready(self, handler: Any) -> None:
        self._ready_handlers.append(handler)

    def on_disconnected(self, handler: Any) -> None:
        self._disconnect_handlers.append(handler)

    def on_qr(self, handler: Any) -> None:
        self._qr_handlers.append(handler)

    async def emit_ready(self) -> None:
        self.connected = True
        for handler in self._ready_handlers:
            await handler()

    async def emit_qr(self, qr: str) -> None:
        for handler in self._qr_handlers:
            await handler(qr)

    async def emit_message(self, message: IncomingMessage) -> None:
        for handler in self._message_handlers:
            await handler(message)


@pytest.fixture
def fake_discord() -> FakeDiscord:
    return FakeDiscord()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        discord=DiscordConfig(token="x"),
        storage=StorageConfig(data_directory=str(tmp_path / "data")),
        whatsapp=WhatsAppConfig(qr_timeout_seconds=1, reconnect_timeout_seconds=1),
        tickets=TicketConfig(delete_delay_seconds=0),
    )


def incoming(text: str, *, phone: str = "15551234567", message_id: str | None = None, **extra: Any) -> IncomingMessage:
    return IncomingMessage(
        message_id=message_id or f"msg-{text}-{phone}",
        phone=phone,
        text=text,
        **extra,
    )
