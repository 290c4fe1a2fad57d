from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import BotError
from utils.constants import VOUCH_PREFIX
from utils.embeds import vouch_embed
from utils.formatting import as_snowflake, render_template

if TYPE_CHECKING:
    from services.instance import Instance

LOGGER = logging.getLogger(__name__)


def is_vouch(text: str) -> bool:
    return (text or "").strip().lower().startswith(VOUCH_PREFIX)


class VouchService:
    """Posts ``Vouch!`` messages from WhatsApp contacts into the vouch channel."""

    def __init__(self, instance: Instance, client: discord.Client) -> None:
        self.instance = instance
        self.client = client

    def accepts_vouches(self) -> bool:
        return bool(self.instance.setting("vouchEnabled")) and bool(self.instance.vouch_channel_id)

    async def handle(self, phone: str, name: str, text: str) -> bool:
        """Return ``True`` when the message was consumed as a vouch."""
        if not self.accepts_vouches():
            return False
        feedback = text.strip()[len(VOUCH_PREFIX):].strip()
        if not feedback:
            return False

        channel_id = as_snowflake(self.instance.vouch_channel_id)
        target = self.client.get_channel(channel_id) if channel_id else None
        if not isinstance(target, discord.abc.Messageable):
            LOGGER.warning("Vouch channel %s unavailable for instance %s", channel_id, self.instance.instance_id)
            return False
        try:
            await target.send(embed=vouch_embed(name, feedback))
        except discord.HTTPException:
            LOGGER.exception("Could not post vouch from %s", phone)
            return False

        session = self.instance.session
        if session is not None:
            reply = render_template(self.instance.setting("vouchSuccessMessage"), {"name": name, "phoneNumber": phone})
            try:
                await session.send_message(phone, reply)
            except BotError as exc:
                LOGGER.warning("Vouch confirmation to %s not delivered: %s", phone, exc.user_message)
        LOGGER.info("Posted vouch from %s to channel %s", phone, channel_id)
        return True
