from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from core.errors import ValidationError
from services.cache import CacheBackend, get_json, set_json
from services.instance import InstanceOptions

LOGGER = logging.getLogger(__name__)

_KEY_PREFIX = "setup-session:"


@dataclass(slots=True)
class SetupSession:
    guild_id: str
    started_by: str | None = None
    category_id: str | None = None
    transcript_channel_id: str | None = None
    vouch_channel_id: str | None = None
    custom_settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SetupSession:
        return cls(
            guild_id=str(data["guild_id"]),
            started_by=data.get("started_by"),
            category_id=data.get("category_id"),
            transcript_channel_id=data.get("transcript_channel_id"),
            vouch_channel_id=data.get("vouch_channel_id"),
            custom_settings=dict(data.get("custom_settings") or {}),
        )

    def to_options(self) -> InstanceOptions:
        if not self.category_id:
            raise ValidationError("Pick a ticket category before finishing setup.")
        return InstanceOptions(
            guild_id=self.guild_id,
            category_id=self.category_id,
            transcript_channel_id=self.transcript_channel_id,
            vouch_channel_id=self.vouch_channel_id,
            custom_settings=dict(self.custom_settings),
        )


class SetupSessionStore:
    """Draft ``/setup`` choices per guild, expiring after ``ttl_seconds``."""

    _FIELDS = {"category_id", "transcript_channel_id", "vouch_channel_id"}

    def __init__(self, cache: CacheBackend, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(guild_id: int | str) -> str:
        return f"{_KEY_PREFIX}{guild_id}"

    async def start(self, guild_id: int | str, started_by: int | str | None = None) -> SetupSession:
        session = SetupSession(guild_id=str(guild_id), started_by=str(started_by) if started_by else None)
        await self._store(session)
        LOGGER.info("Setup started for guild %s by %s", guild_id, started_by)
        return session

    async def get(self, guild_id: int | str) -> SetupSession | None:
        data = await get_json(self.cache, self._key(guild_id))
        if not isinstance(data, dict):
            return None
        return SetupSession.from_dict(data)

    async def require(self, guild_id: int | str) -> SetupSession:
        session = await self.get(guild_id)
        if session is None:
            raise ValidationError("This setup session expired. Run `/setup` again.")
        return session

    async def update(self, guild_id: int | str, **changes: Any) -> SetupSession:
        session = await self.require(guild_id)
        for key, value in changes.items():
            if key not in self._FIELDS:
                raise ValueError(f"Unknown setup field: {key}")
            setattr(session, key, str(value) if value else None)
        await self._store(session)
        return session

    async def set_custom_settings(self, guild_id: int | str, settings: dict[str, Any]) -> SetupSession:
        session = await self.require(guild_id)
        session.custom_settings.update(settings)
        await self._store(session)
        return session

    async def discard(self, guild_id: int | str) -> None:
        await self.cache.delete(self._key(guild_id))

    async def _store(self, session: SetupSession) -> None:
        await set_json(self.cache, self._key(session.guild_id), asdict(session), ttl=self.ttl_seconds)
