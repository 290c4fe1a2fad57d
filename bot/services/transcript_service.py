from __future__ import annotations

import html
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import discord

from utils.constants import NEW_TICKET_MARKER, TRANSCRIPT_HEADER
from utils.formatting import as_snowflake, normalize_phone, sanitize_channel_fragment

if TYPE_CHECKING:
    from services.instance import Instance

LOGGER = logging.getLogger(__name__)

_HOUSEKEEPING_PREFIXES = (NEW_TICKET_MARKER, TRANSCRIPT_HEADER)


class TranscriptService:
    """Writes closed-ticket transcripts under ``instances/<id>/transcripts/<phone>/``."""

    def __init__(self, instance: Instance, client: discord.Client, base_dir: Path) -> None:
        self.instance = instance
        self.client = client
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._channel_contacts: dict[str, tuple[str, str]] = {}

    def ensure_phone_for_transcript(self, channel_id: int | str, phone: str, username: str) -> None:
        self._channel_contacts[str(channel_id)] = (normalize_phone(phone), username)

    def latest_transcript(self, phone: str) -> Path | None:
        folder = self.base_dir / normalize_phone(phone)
        if not folder.is_dir():
            return None
        candidates = sorted(folder.glob("transcript-*.html"))
        return candidates[-1] if candidates else None

    async def generate_transcript(
        self, channel: discord.TextChannel, closed_by: discord.abc.User | None = None
    ) -> Path | None:
        if not self.instance.setting("transcriptsEnabled"):
            LOGGER.info("Transcripts disabled for instance %s; skipping #%s", self.instance.instance_id, channel.name)
            return None

        phone, username = self._channel_contacts.get(str(channel.id), ("", channel.name))
        folder = self.base_dir / (phone or sanitize_channel_fragment(channel.name, 60))
        folder.mkdir(parents=True, exist_ok=True)

        messages: list[discord.Message] = []
        async for message in channel.history(limit=None, oldest_first=True):
            if message.author.bot and (message.content or "").startswith(_HOUSEKEEPING_PREFIXES):
                continue
            messages.append(message)

        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        html_path = folder / f"transcript-{stamp}.html"
        html_path.write_text(
            self._build_html(channel, messages, phone, username, closed_by), encoding="utf-8"
        )
        (folder / f"transcript-{stamp}.txt").write_text(self._build_text(messages), encoding="utf-8")
        LOGGER.info("Transcript for #%s written to %s", channel.name, html_path)

        await self._publish(html_path, username, phone, closed_by)
        return html_path

    async def _publish(
        self, path: Path, username: str, phone: str, closed_by: discord.abc.User | None
    ) -> None:
        channel_id = as_snowflake(self.instance.transcript_channel_id)
        if channel_id is None:
            return
        target = self.client.get_channel(channel_id)
        if not isinstance(target, discord.abc.Messageable):
            LOGGER.warning("Transcript channel %s is not reachable", channel_id)
            return
        closer = f" (closed by {closed_by})" if closed_by else ""
        try:
            await target.send(
                content=f"Transcript for **{username}** `{phone}`{closer}",
                file=discord.File(path),
            )
        except discord.HTTPException:
            LOGGER.warning("Could not post transcript to channel %s", channel_id, exc_info=True)

    @staticmethod
    def _build_text(messages: Iterable[discord.Message]) -> str:
        lines: list[str] = []
        for msg in messages:
            created = msg.created_at.isoformat()
            lines.append(f"[{created}] {msg.author}: {msg.content or ''}")
            for attach in msg.attachments:
                lines.append(f"  attachment: {attach.url}")
        return "\n".join(lines)

    @staticmethod
    def _build_html(
        channel: discord.TextChannel,
        messages: Iterable[discord.Message],
        phone: str,
        username: str,
        closed_by: discord.abc.User | None,
    ) -> str:
        rows: list[str] = []
        for msg in messages:
            attachment_html = ""
            if msg.attachments:
                links = "".join(
                    f'<li><a href="{html.escape(a.url)}">{html.escape(a.filename)}</a></li>'
                    for a in msg.attachments
                )
                attachment_html = f"<ul>{links}</ul>"
            author_class = "bot" if msg.author.bot else "staff"
            rows.append(
                f"<div class='msg {author_class}'>"
                f"<div class='meta'>{html.escape(str(msg.author))} | {msg.created_at.isoformat()}</div>"
                f"<div class='content'>{html.escape(msg.content or '')}</div>"
                f"{attachment_html}"
                "</div>"
            )

        closer = html.escape(str(closed_by)) if closed_by else "unknown"
        return (
            "<!doctype html><html><head><meta charset='utf-8'>"
            "<style>"
            "body{font-family:Arial,sans-serif;background:#f5f7fb;color:#1f2937;padding:16px;}"
            ".msg{background:white;border:1px solid #e5e7eb;border-radius:8px;padding:10px;margin-bottom:8px;}"
            ".msg.bot{border-left:4px solid #25d366;}"
            ".meta{font-size:12px;color:#6b7280;margin-bottom:6px;}"
            ".content{white-space:pre-wrap;}"
            "</style></head><body>"
            f"<h1>WhatsApp ticket - {html.escape(username)}</h1>"
            f"<p>Phone: {html.escape(phone or 'unknown')} | Channel: #{html.escape(channel.name)}"
            f" | Closed by: {closer}</p>"
            + "".join(rows)
            + "</body></html>"
        )
