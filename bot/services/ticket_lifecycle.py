from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import discord

from core.config import TicketConfig
from core.errors import (
    BotError,
    CategoryNotConfiguredError,
    TicketCreationError,
    TicketNotFoundError,
    ValidationError,
    WhatsAppUnavailableError,
)
from utils.constants import (
    NEW_TICKET_MARKER,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_CLOSING,
    TICKET_STATUS_OPEN,
    TRANSCRIPT_HEADER,
)
from utils.embeds import closing_embed, ticket_info_embed
from utils.formatting import as_snowflake, normalize_phone, render_template, ticket_channel_name
from utils.locks import KeyedLocks
from views.ticket_controls import build_ticket_controls

if TYPE_CHECKING:
    from services.channel_manager import TicketChannelManager
    from services.contacts import ContactBook
    from services.instance import Instance
    from services.transcript_service import TranscriptService

LOGGER = logging.getLogger(__name__)

Backlog = Callable[[], Iterable[tuple[str, int | None]]]


class CloseOutcome(Enum):
    CLOSED = "closed"
    ALREADY_CLOSING = "already_closing"
    NOT_A_TICKET = "not_a_ticket"

    def describe(self) -> str:
        if self is CloseOutcome.CLOSED:
            return "Ticket closed. The channel will be deleted shortly."
        if self is CloseOutcome.ALREADY_CLOSING:
            return "This ticket is already being closed."
        return "This channel is not an active WhatsApp ticket."


class CreationStrategy(Enum):
    FULL_PERMISSIONS = "full_permissions"
    NO_OVERWRITES = "no_overwrites"
    BARE = "bare"


CREATION_SEQUENCE = (
    CreationStrategy.FULL_PERMISSIONS,
    CreationStrategy.NO_OVERWRITES,
    CreationStrategy.BARE,
)


@dataclass(slots=True, order=True)
class QueuedDelivery:
    sequence: int
    arrival: int
    content: str = field(compare=False)
    files: list[discord.File] | None = field(default=None, compare=False)


class TicketLifecycle:
    """Creates, feeds, closes and deletes the ticket channels of one instance.

    Per channel: NONE -> OPEN -> CLOSING -> DELETED. The close guard lives in
    :class:`TicketChannelManager`; this class only orchestrates side effects.
    """

    def __init__(
        self,
        instance: Instance,
        client: discord.Client,
        channels: TicketChannelManager,
        transcripts: TranscriptService,
        contacts: ContactBook,
        config: TicketConfig,
    ) -> None:
        self.instance = instance
        self.client = client
        self.channels = channels
        self.transcripts = transcripts
        self.contacts = contacts
        self.config = config
        self._creation_locks = KeyedLocks()
        self._restoring: dict[str, list[QueuedDelivery]] = {}
        self._sequences: dict[str, int] = {}
        self._arrivals = itertools.count()
        self._pending_deletions: set[asyncio.Task[None]] = set()

    # creation

    async def create_ticket(
        self, phone: str, username: str, backlog: Backlog | None = None
    ) -> discord.TextChannel:
        """Open (or reuse) the ticket for ``phone``.

        ``backlog`` is called once the channel is mapped and yields ``(content, sequence)``
        pairs that were received while the channel did not exist yet. They are queued
        behind the bootstrap messages and flushed in sequence order.
        """
        phone_key = normalize_phone(phone)
        name = (username or "").strip()
        if not phone_key or not name:
            raise ValidationError("A phone number and a username are required to open a ticket.")

        async with self._creation_locks.hold(phone_key):
            existing = await self._existing_ticket(phone_key)
            if existing is not None:
                for content, sequence in backlog() if backlog is not None else ():
                    await self.deliver(existing.id, content, sequence=sequence)
                return existing

            guild = await self._resolve_guild()
            category = await self._resolve_category(guild)
            channel = await self._create_channel(guild, category, phone_key, name)

            # mapping, restoring mode and backlog are taken together without yielding
            self.channels.set_mapping(phone_key, channel.id)
            self.channels.set_status(channel.id, TICKET_STATUS_OPEN)
            self.begin_restoration(channel.id)
            for content, sequence in backlog() if backlog is not None else ():
                self._enqueue(str(channel.id), content, sequence, None)

            self.contacts.set(phone_key, name)
            self.transcripts.ensure_phone_for_transcript(channel.id, phone_key, name)
            LOGGER.info("Opened ticket #%s (%s) for %s", channel.name, channel.id, phone_key)

            try:
                await self._send_bootstrap(channel, phone_key, name)
            except discord.HTTPException:
                # channel and mapping stay in place; staff can still use or delete it
                LOGGER.exception("Bootstrap messages failed for ticket %s; leaving it for manual cleanup", channel.id)
            finally:
                await self.finish_restoration(channel.id)
            return channel

    async def _existing_ticket(self, phone: str) -> discord.TextChannel | None:
        channel_id = self.channels.get_channel_id(phone)
        if channel_id is None or self.channels.is_closed(channel_id):
            return None
        channel = await self._resolve_channel(channel_id)
        if channel is None:
            LOGGER.info("Dropping stale mapping %s -> %s", phone, channel_id)
            self.channels.remove_mapping(phone)
        return channel

    async def _resolve_guild(self) -> discord.Guild:
        guild_id = as_snowflake(self.instance.guild_id)
        if guild_id is None:
            raise TicketCreationError("This instance has no guild configured.")
        guild = self.client.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self.client.fetch_guild(guild_id)
        except discord.HTTPException as exc:
            raise TicketCreationError(f"Guild {guild_id} is not reachable.") from exc

    async def _resolve_category(self, guild: discord.Guild) -> discord.CategoryChannel:
        category_id = as_snowflake(self.instance.category_id)
        if category_id is None:
            raise CategoryNotConfiguredError()
        category = guild.get_channel(category_id)
        if category is None:
            try:
                category = await guild.fetch_channel(category_id)
            except discord.HTTPException as exc:
                raise TicketCreationError(f"Ticket category {category_id} is not reachable.") from exc
        if not isinstance(category, discord.CategoryChannel):
            raise TicketCreationError(f"Channel {category_id} is not a category.")
        return category

    @staticmethod
    def _ticket_overwrites(
        guild: discord.Guild,
    ) -> dict[discord.abc.Snowflake, discord.PermissionOverwrite]:
        return {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
            guild.me: discord.PermissionOverwrite(
                view_channel=True,
                send_messages=True,
                read_message_history=True,
                manage_messages=True,
                embed_links=True,
                attach_files=True,
                manage_roles=True,
                manage_channels=True,
            ),
        }

    async def _create_channel(
        self, guild: discord.Guild, category: discord.CategoryChannel, phone: str, name: str
    ) -> discord.TextChannel:
        channel_name = ticket_channel_name(
            self.config.channel_prefix, name, phone, self.config.channel_name_max_length
        )
        overwrites = self._ticket_overwrites(guild)
        topic = f"WhatsApp ticket | {name} | {phone}"
        last_error: discord.HTTPException | None = None
        for strategy in CREATION_SEQUENCE:
            try:
                channel = await self._attempt_creation(
                    strategy, guild, category, channel_name, overwrites, topic
                )
            except discord.HTTPException as exc:
                LOGGER.warning("Ticket channel creation via %s failed: %s", strategy.value, exc)
                last_error = exc
                continue
            if strategy is not CreationStrategy.FULL_PERMISSIONS:
                LOGGER.info("Ticket channel %s created via fallback %s", channel.id, strategy.value)
            return channel
        raise TicketCreationError("Discord refused every channel creation attempt.") from last_error

    async def _attempt_creation(
        self,
        strategy: CreationStrategy,
        guild: discord.Guild,
        category: discord.CategoryChannel,
        channel_name: str,
        overwrites: dict[discord.abc.Snowflake, discord.PermissionOverwrite],
        topic: str,
    ) -> discord.TextChannel:
        if strategy is CreationStrategy.FULL_PERMISSIONS:
            return await guild.create_text_channel(
                name=channel_name,
                category=category,
                overwrites=overwrites,
                topic=topic,
                reason="WhatsApp ticket",
            )
        if strategy is CreationStrategy.NO_OVERWRITES:
            channel = await guild.create_text_channel(
                name=channel_name, category=category, topic=topic, reason="WhatsApp ticket"
            )
            await self._apply_overwrites(channel, overwrites)
            return channel

        channel = await guild.create_text_channel(name=channel_name, reason="WhatsApp ticket")
        try:
            await channel.edit(category=category, topic=topic)
        except discord.HTTPException:
            LOGGER.warning("Could not move ticket channel %s into category %s", channel.id, category.id)
        await self._apply_overwrites(channel, overwrites)
        return channel

    @staticmethod
    async def _apply_overwrites(
        channel: discord.TextChannel,
        overwrites: dict[discord.abc.Snowflake, discord.PermissionOverwrite],
    ) -> None:
        for target, overwrite in overwrites.items():
            try:
                await channel.set_permissions(target, overwrite=overwrite)
            except discord.HTTPException:
                LOGGER.warning("Could not set permissions on ticket channel %s; keeping defaults", channel.id)
                return

    async def _send_bootstrap(self, channel: discord.TextChannel, phone: str, name: str) -> None:
        await channel.send(NEW_TICKET_MARKER)

        previous = self.transcripts.latest_transcript(phone)
        if previous is not None:
            await channel.send(
                content=f"{TRANSCRIPT_HEADER}\nPrevious conversation with **{name}**:",
                file=discord.File(previous),
            )

        template = self.instance.setting("newTicketMessage")
        values = {"name": name, "username": name, "phoneNumber": phone}
        await channel.send(render_template(template, values))

        info = await channel.send(
            embed=ticket_info_embed(name, phone),
            view=build_ticket_controls(channel.id, phone),
        )
        try:
            await info.pin(reason="WhatsApp ticket information")
        except discord.HTTPException as exc:
            LOGGER.warning("Could not pin ticket info in %s: %s", channel.id, exc)
            await channel.send(
                "⚠️ I could not pin the ticket information. Grant me **Manage Messages** to enable pinning."
            )

    # restoration ordering

    def begin_restoration(self, channel_id: int | str) -> None:
        self._restoring.setdefault(str(channel_id), [])

    def is_restoring(self, channel_id: int | str) -> bool:
        return str(channel_id) in self._restoring

    def _next_sequence(self, key: str, provided: int | None) -> int:
        current = self._sequences.get(key, 0)
        value = current + 1 if provided is None else provided
        self._sequences[key] = max(current, value)
        return value

    async def deliver(
        self,
        channel_id: int | str,
        content: str,
        *,
        sequence: int | None = None,
        files: list[discord.File] | None = None,
    ) -> bool:
        """Post to a ticket, or queue it while the channel is being restored."""
        key = str(channel_id)
        if key in self._restoring:
            self._enqueue(key, content, sequence, files)
            return True
        self._next_sequence(key, sequence)
        return await self._post(key, content, files)

    def _enqueue(
        self, key: str, content: str, sequence: int | None, files: list[discord.File] | None
    ) -> None:
        self._restoring[key].append(
            QueuedDelivery(
                sequence=self._next_sequence(key, sequence),
                arrival=next(self._arrivals),
                content=content,
                files=files,
            )
        )

    async def finish_restoration(self, channel_id: int | str) -> int:
        key = str(channel_id)
        flushed = 0
        # the channel stays in restoring mode until the queue is drained so late
        # arrivals cannot overtake queued ones
        while True:
            pending = self._restoring.get(key)
            if not pending:
                self._restoring.pop(key, None)
                return flushed
            self._restoring[key] = []
            for item in sorted(pending):
                if await self._post(key, item.content, item.files):
                    flushed += 1

    async def _post(self, key: str, content: str, files: list[discord.File] | None) -> bool:
        if self.channels.get_status(key) in (TICKET_STATUS_CLOSING, TICKET_STATUS_CLOSED):
            LOGGER.debug("Dropping message for closing ticket %s", key)
            return False
        channel = await self._resolve_channel(key)
        if channel is None:
            LOGGER.warning("Ticket channel %s vanished; message dropped", key)
            return False
        try:
            await channel.send(content=content[:2000] or None, files=files)
        except discord.HTTPException:
            LOGGER.exception("Failed to post message into ticket %s", key)
            return False
        return True

    async def _resolve_channel(self, channel_id: int | str) -> discord.TextChannel | None:
        snowflake = as_snowflake(channel_id)
        if snowflake is None:
            return None
        channel = self.client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(snowflake)
            except discord.NotFound:
                return None
            except discord.HTTPException:
                LOGGER.warning("Could not fetch ticket channel %s", snowflake, exc_info=True)
                return None
        return channel  # type: ignore[return-value]

    # closing

    async def close_ticket(
        self, channel_id: int | str, closed_by: discord.abc.User | None = None
    ) -> CloseOutcome:
        key = str(channel_id)
        if self.channels.get_phone(key) is None and self.channels.get_status(key) is None:
            return CloseOutcome.NOT_A_TICKET
        if not self.channels.try_begin_closing(key):
            LOGGER.info("Close for ticket %s ignored; already closing", key)
            return CloseOutcome.ALREADY_CLOSING

        phone = self.channels.get_phone(key)
        channel: discord.TextChannel | None = None
        try:
            channel = await self._resolve_channel(key)
            if phone and self.instance.setting("sendClosingMessage") is True:
                await self._send_closing_message(phone)
            if channel is not None:
                await self._generate_transcript(channel, closed_by)
                await self._post_closing_notice(channel, closed_by)
        except Exception:
            # past the guard the ticket must still reach closed and be deleted
            LOGGER.exception("Closing ticket %s failed part way; finishing the close", key)

        self._finish_close(key, phone, channel)
        LOGGER.info("Closed ticket %s (phone=%s, by=%s)", key, phone, closed_by)
        return CloseOutcome.CLOSED

    def _finish_close(self, key: str, phone: str | None, channel: discord.TextChannel | None) -> None:
        if phone:
            self.channels.remove_mapping(phone)
        else:
            self.channels.remove_mapping_by_channel(key)
        self.channels.set_status(key, TICKET_STATUS_CLOSED)
        self._schedule_deletion(key, channel)

    async def _send_closing_message(self, phone: str) -> None:
        session = self.instance.session
        if session is None:
            return
        values = {"name": self.contacts.get(phone) or phone, "phoneNumber": phone}
        try:
            await session.send_message(phone, render_template(self.instance.setting("closingMessage"), values))
        except BotError as exc:
            LOGGER.warning("Closing message to %s not delivered: %s", phone, exc.user_message)
        except Exception:
            LOGGER.exception("Closing message to %s failed", phone)

    async def _post_closing_notice(
        self, channel: discord.TextChannel, closed_by: discord.abc.User | None
    ) -> None:
        notice = closing_embed(str(closed_by) if closed_by else None, self.config.delete_delay_seconds)
        try:
            await channel.send(embed=notice)
        except discord.HTTPException:
            LOGGER.warning("Could not post closing notice in %s", channel.id)

    async def _generate_transcript(
        self, channel: discord.TextChannel, closed_by: discord.abc.User | None
    ) -> None:
        try:
            await self.transcripts.generate_transcript(channel, closed_by)
        except Exception:
            # a missing transcript must not leave the ticket stuck
            LOGGER.exception("Transcript generation failed for ticket %s", channel.id)

    def _schedule_deletion(self, key: str, channel: discord.TextChannel | None) -> None:
        task = asyncio.create_task(self._delete_later(key, channel), name=f"ticket-delete-{key}")
        self._pending_deletions.add(task)
        task.add_done_callback(self._pending_deletions.discard)

    async def _delete_later(self, key: str, channel: discord.TextChannel | None) -> None:
        if self.config.delete_delay_seconds > 0:
            await asyncio.sleep(self.config.delete_delay_seconds)
        await self.delete_channel(key, channel)

    async def delete_channel(
        self, channel_id: int | str, channel: discord.TextChannel | None = None
    ) -> bool:
        key = str(channel_id)
        try:
            target = channel if channel is not None else await self._resolve_channel(key)
            if target is None:
                return False
            await target.delete(reason="WhatsApp ticket closed")
            LOGGER.info("Deleted ticket channel %s", key)
            return True
        except discord.NotFound:
            return False
        except discord.HTTPException:
            LOGGER.exception("Failed to delete ticket channel %s", key)
            return False
        finally:
            self.channels.release_closing(key)
            self._sequences.pop(key, None)

    async def resume_interrupted_closes(self) -> int:
        """Finish what a previous run left behind.

        Tickets still in ``closing`` get their transcript and move to ``closed``.
        Tickets already ``closed`` whose channel is still in the client cache lost
        their delayed delete to a restart and are scheduled for deletion again.
        """
        interrupted = self.channels.channels_with_status(TICKET_STATUS_CLOSING)
        resumed = 0
        for key in interrupted:
            phone = self.channels.get_phone(key)
            channel = await self._resolve_channel(key)
            if channel is not None:
                await self._generate_transcript(channel, None)
            self._finish_close(key, phone, channel)
            resumed += 1

        for key in self.channels.channels_with_status(TICKET_STATUS_CLOSED):
            if key in interrupted:
                continue
            snowflake = as_snowflake(key)
            channel = self.client.get_channel(snowflake) if snowflake is not None else None
            if channel is None:
                continue
            self._schedule_deletion(key, channel)  # type: ignore[arg-type]
            resumed += 1

        if resumed:
            LOGGER.info("Resumed %s interrupted ticket closes for %s", resumed, self.instance.instance_id)
        return resumed

    async def forget_channel(self, channel_id: int | str) -> bool:
        """Account for a ticket channel that was deleted by hand."""
        key = str(channel_id)
        if self.channels.get_phone(key) is None:
            return False
        if not self.channels.try_begin_closing(key):
            return False
        self.channels.remove_mapping_by_channel(key)
        self.channels.set_status(key, TICKET_STATUS_CLOSED)
        self.channels.release_closing(key)
        LOGGER.info("Ticket channel %s was deleted manually; mapping dropped", key)
        return True

    # contact actions

    async def rename_contact(self, channel_id: int | str, name: str) -> None:
        key = str(channel_id)
        phone = self.channels.get_phone(key)
        cleaned = (name or "").strip()
        if phone is None or self.channels.is_closed(key):
            raise TicketNotFoundError()
        if not cleaned:
            raise ValidationError("The contact name cannot be empty.")
        self.contacts.set(phone, cleaned)
        self.transcripts.ensure_phone_for_transcript(key, phone, cleaned)
        channel = await self._resolve_channel(key)
        if channel is None:
            return
        try:
            await channel.edit(
                name=ticket_channel_name(
                    self.config.channel_prefix, cleaned, phone, self.config.channel_name_max_length
                )
            )
        except discord.HTTPException:
            LOGGER.warning("Could not rename ticket channel %s", key)

    async def send_vouch_request(self, channel_id: int | str) -> str:
        key = str(channel_id)
        phone = self.channels.get_phone(key)
        if phone is None or self.channels.is_closed(key):
            raise TicketNotFoundError()
        if not self.instance.setting("vouchEnabled"):
            raise ValidationError("Vouches are disabled for this server.")
        session = self.instance.session
        if session is None or not session.is_connected():
            raise WhatsAppUnavailableError()
        values = {"name": self.contacts.get(phone) or phone, "phoneNumber": phone}
        await session.send_message(phone, render_template(self.instance.setting("vouchMessage"), values))
        return phone

    def open_ticket_count(self) -> int:
        return len(self.channels.all_mappings())

    async def shutdown(self) -> None:
        pending = list(self._pending_deletions)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending_deletions.clear()
