from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from utils.constants import (
    CHANNEL_IDENTITY_FIELDS,
    DEFAULT_SETTINGS,
    IDENTITY_FIELDS,
    INSTANCE_STATUS_ACTIVE,
)

if TYPE_CHECKING:
    from services.channel_manager import TicketChannelManager
    from services.contacts import ContactBook
    from services.relay import WhatsAppRelay
    from services.ticket_lifecycle import TicketLifecycle
    from services.transcript_service import TranscriptService
    from services.whatsapp import WhatsAppSession

QR_MAX_AGE_SECONDS = 45

_ATTRIBUTE_FOR_KEY = {
    "guildId": "guild_id",
    "categoryId": "category_id",
    "transcriptChannelId": "transcript_channel_id",
    "vouchChannelId": "vouch_channel_id",
}


@dataclass(slots=True)
class InstanceOptions:
    guild_id: int | str
    category_id: int | str | None = None
    transcript_channel_id: int | str | None = None
    vouch_channel_id: int | str | None = None
    custom_settings: dict[str, Any] = field(default_factory=dict)

    def identity(self) -> dict[str, Any]:
        data: dict[str, Any] = {"guildId": str(self.guild_id)}
        if self.category_id is not None:
            data["categoryId"] = str(self.category_id)
        data["transcriptChannelId"] = str(self.transcript_channel_id) if self.transcript_channel_id else None
        data["vouchChannelId"] = str(self.vouch_channel_id) if self.vouch_channel_id else None
        return data


@dataclass(slots=True)
class Instance:
    instance_id: str
    guild_id: str
    category_id: str | None = None
    transcript_channel_id: str | None = None
    vouch_channel_id: str | None = None
    custom_settings: dict[str, Any] = field(default_factory=dict)
    status: str = INSTANCE_STATUS_ACTIVE
    is_temporary: bool = False
    directory: Path | None = None
    session: WhatsAppSession | None = None
    channels: TicketChannelManager | None = None
    contacts: ContactBook | None = None
    transcripts: TranscriptService | None = None
    lifecycle: TicketLifecycle | None = None
    relay: WhatsAppRelay | None = None
    last_qr: str | None = None
    last_qr_at: float = 0.0
    _pairing_waiters: list[asyncio.Future[str | None]] = field(default_factory=list)

    @classmethod
    def from_identity(
        cls,
        instance_id: str,
        identity: dict[str, Any],
        settings: dict[str, Any],
        *,
        temporary: bool = False,
    ) -> Instance:
        instance = cls(
            instance_id=str(instance_id),
            guild_id=str(identity.get("guildId") or instance_id),
            custom_settings=custom_only(settings),
            status=str(settings.get("instanceStatus") or INSTANCE_STATUS_ACTIVE),
            is_temporary=temporary,
        )
        # per-instance file wins over the index for channel ids
        instance.apply_identity({**identity, **{k: settings[k] for k in CHANNEL_IDENTITY_FIELDS if k in settings}})
        return instance

    def setting(self, key: str) -> Any:
        if key in self.custom_settings:
            return self.custom_settings[key]
        return DEFAULT_SETTINGS.get(key)

    def special_channels(self) -> dict[str, Any]:
        value = self.setting("specialChannels")
        return dict(value) if isinstance(value, dict) else {}

    def identity(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in _ATTRIBUTE_FOR_KEY.items()}

    def apply_identity(self, data: dict[str, Any]) -> None:
        for key in IDENTITY_FIELDS:
            if key in data:
                value = data[key]
                setattr(self, _ATTRIBUTE_FOR_KEY[key], str(value) if value else None)
        if not self.guild_id:
            self.guild_id = self.instance_id

    def is_live(self) -> bool:
        return not self.is_temporary and self.session is not None and self.lifecycle is not None

    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_connected()

    def current_qr(self) -> str | None:
        if self.last_qr and time.monotonic() - self.last_qr_at < QR_MAX_AGE_SECONDS:
            return self.last_qr
        return None

    def new_pairing_waiter(self) -> asyncio.Future[str | None]:
        waiter: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._pairing_waiters.append(waiter)
        return waiter

    def discard_pairing_waiter(self, waiter: asyncio.Future[str | None]) -> None:
        if waiter in self._pairing_waiters:
            self._pairing_waiters.remove(waiter)

    def resolve_pairing(self, qr: str | None) -> None:
        """Wake pairing callers: a QR string for a new code, ``None`` once connected."""
        if qr is not None:
            self.last_qr = qr
            self.last_qr_at = time.monotonic()
        else:
            self.last_qr = None
        for waiter in self._pairing_waiters:
            if not waiter.done():
                waiter.set_result(qr)


def custom_only(settings: dict[str, Any]) -> dict[str, Any]:
    skipped = set(IDENTITY_FIELDS) | {"instanceStatus"}
    return {key: value for key, value in settings.items() if key not in skipped}
