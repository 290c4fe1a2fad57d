from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING

import discord

from core.errors import BotError
from services.vouch_service import VouchService, is_vouch
from services.whatsapp import IncomingMessage
from utils.formatting import normalize_phone, render_template, substitute_channel_mentions
from utils.locks import KeyedLocks

if TYPE_CHECKING:
    from services.instance import Instance

LOGGER = logging.getLogger(__name__)

SEEN_LIMIT = 1000
SEEN_TRIM = 200


class WhatsAppRelay:
    """Routes WhatsApp traffic into tickets and staff replies back to WhatsApp.

    Unknown contacts are asked for a name first; their next message becomes the
    contact name and opens the ticket. Known contacts without an open ticket get
    the reopen greeting and a fresh ticket. The per-sender lock only covers the
    routing decision: while a ticket is being opened, further messages from that
    sender are buffered and handed to the new ticket in sequence order.
    """

    def __init__(self, instance: Instance, vouches: VouchService) -> None:
        self.instance = instance
        self.vouches = vouches
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._sender_locks = KeyedLocks()
        self._awaiting_name: dict[str, list[IncomingMessage]] = {}
        self._opening: dict[str, tuple[str, list[IncomingMessage]]] = {}

    def _already_seen(self, message_id: str) -> bool:
        if not message_id:
            return False
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > SEEN_LIMIT:
            for _ in range(SEEN_TRIM):
                self._seen.popitem(last=False)
        return False

    async def handle_incoming(self, message: IncomingMessage) -> None:
        if message.from_me or message.is_group or self._already_seen(message.message_id):
            return
        phone = normalize_phone(message.phone)
        if not phone:
            return
        try:
            async with self._sender_locks.hold(phone):
                opening = await self._route(phone, message)
            if opening:
                await self._open_ticket(phone)
        except BotError as exc:
            LOGGER.warning("Could not route WhatsApp message from %s: %s", phone, exc.user_message)

    async def _route(self, phone: str, message: IncomingMessage) -> bool:
        """Deliver or buffer ``message``; returns True when the caller must open the ticket."""
        lifecycle = self.instance.lifecycle
        channels = self.instance.channels
        contacts = self.instance.contacts
        text = message.text.strip()
        name = contacts.get(phone)

        if phone in self._opening:
            self._opening[phone][1].append(message)
            return False

        if is_vouch(text) and await self.vouches.handle(phone, name or message.push_name or phone, text):
            return False

        channel_id = channels.get_channel_id(phone)
        if channel_id is not None and not channels.is_closed(channel_id):
            await lifecycle.deliver(channel_id, self._format(name or phone, message), sequence=message.sequence)
            return False

        if name:
            await self._reply(phone, "reopenTicketMessage", name)
            self._opening[phone] = (name, [message])
            return True

        if phone not in self._awaiting_name:
            self._awaiting_name[phone] = [message]
            await self._reply(phone, "welcomeMessage", message.push_name or "")
            return False

        earlier = self._awaiting_name.pop(phone)
        chosen = text[:80] or message.push_name or phone
        contacts.set(phone, chosen)
        await self._reply(phone, "introMessage", chosen)
        self._opening[phone] = (chosen, earlier)
        return True

    async def _open_ticket(self, phone: str) -> None:
        name = self._opening[phone][0]

        def backlog() -> list[tuple[str, int | None]]:
            _, pending = self._opening.pop(phone, (name, []))
            return [(self._format(name, queued), queued.sequence) for queued in pending]

        try:
            await self.instance.lifecycle.create_ticket(phone, name, backlog)
        finally:
            dropped = self._opening.pop(phone, None)
            if dropped is not None and dropped[1]:
                LOGGER.warning("Dropped %s messages from %s; no ticket could be opened", len(dropped[1]), phone)

    async def _reply(self, phone: str, template_key: str, name: str) -> None:
        session = self.instance.session
        if session is None:
            return
        text = render_template(self.instance.setting(template_key), {"name": name, "phoneNumber": phone})
        try:
            await session.send_message(phone, text)
        except BotError as exc:
            LOGGER.warning("%s to %s not delivered: %s", template_key, phone, exc.user_message)

    @staticmethod
    def _format(name: str, message: IncomingMessage) -> str:
        lines = [f"**{name}**: {message.text}" if message.text else f"**{name}** sent an attachment"]
        for attachment in message.attachments:
            url = attachment.get("url")
            if url:
                lines.append(str(url))
        return "\n".join(lines)

    async def forward_from_discord(self, message: discord.Message) -> bool:
        """Send a staff message written in a ticket channel to the WhatsApp contact."""
        channels = self.instance.channels
        phone = channels.get_phone(message.channel.id)
        if phone is None or channels.is_closed(message.channel.id):
            return False
        session = self.instance.session
        if session is None or not session.is_connected():
            LOGGER.info("WhatsApp offline; staff message in %s not forwarded", message.channel.id)
            return False

        content = substitute_channel_mentions(message.content or "", self.instance.special_channels())
        parts = [content] if content.strip() else []
        parts.extend(attachment.url for attachment in message.attachments)
        if not parts:
            return False
        try:
            await session.send_message(phone, "\n".join(parts))
        except BotError as exc:
            LOGGER.warning("Staff reply to %s not delivered: %s", phone, exc.user_message)
            return False
        return True
