from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import FakeDiscord, make_channel
from services.instance import Instance
from services.transcript_service import TranscriptService
from utils.constants import NEW_TICKET_MARKER


def _message(author: str, content: str, *, bot: bool = False) -> MagicMock:
    message = MagicMock()
    message.author.bot = bot
    message.author.__str__.return_value = author
    message.content = content
    message.attachments = []
    message.created_at = datetime(2024, 1, 1, tzinfo=UTC)
    return message


def _channel_with_history(channel_id: int, messages: list[MagicMock]) -> MagicMock:
    channel = make_channel(channel_id, "📋-alice")

    async def _history(**kwargs):
        for message in messages:
            yield message

    channel.history = MagicMock(side_effect=_history)
    return channel


@pytest.mark.asyncio
async def test_transcript_skips_housekeeping_and_publishes(tmp_path: Path, fake_discord: FakeDiscord) -> None:
    archive = fake_discord.add_channel(700)
    instance = Instance(instance_id="111", guild_id="111", transcript_channel_id="700")
    service = TranscriptService(instance, fake_discord.client, tmp_path)
    service.ensure_phone_for_transcript(5, "15551234567", "Alice")
    channel = _channel_with_history(
        5,
        [
            _message("Bridge", NEW_TICKET_MARKER, bot=True),
            _message("Bridge", "**Alice**: my order is late", bot=True),
            _message("staff#1", "Looking into it"),
        ],
    )

    path = await service.generate_transcript(channel)

    assert path is not None and path.parent == tmp_path / "15551234567"
    body = path.read_text(encoding="utf-8")
    assert NEW_TICKET_MARKER not in body
    assert "my order is late" in body
    assert "Looking into it" in body
    assert path.with_suffix(".txt").exists()
    assert service.latest_transcript("15551234567") == path
    archive.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_transcripts_can_be_disabled(tmp_path: Path, fake_discord: FakeDiscord) -> None:
    instance = Instance(instance_id="111", guild_id="111", custom_settings={"transcriptsEnabled": False})
    service = TranscriptService(instance, fake_discord.client, tmp_path)
    channel = _channel_with_history(5, [])

    assert await service.generate_transcript(channel) is None
    channel.history.assert_not_called()
    assert service.latest_transcript("15551234567") is None
