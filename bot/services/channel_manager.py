from __future__ import annotations

import logging
from pathlib import Path

from core.errors import TicketStateError
from storage.json_files import read_json, write_json_atomic
from utils.constants import (
    CHANNEL_MAP_FILE_NAME,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_CLOSING,
    TICKET_STATUS_FILE_NAME,
    TICKET_STATUS_OPEN,
    TICKET_TRANSITIONS,
)
from utils.formatting import normalize_phone

LOGGER = logging.getLogger(__name__)

_KNOWN_STATUSES = {TICKET_STATUS_OPEN, TICKET_STATUS_CLOSING, TICKET_STATUS_CLOSED}


class TicketChannelManager:
    """Phone to channel mapping plus per-channel ticket status for one instance.

    Both maps are written through on every mutation. None of the public methods
    suspend, so each call completes without interleaving on the event loop.
    """

    def __init__(self, instance_dir: Path) -> None:
        self.map_path = Path(instance_dir) / CHANNEL_MAP_FILE_NAME
        self.status_path = Path(instance_dir) / TICKET_STATUS_FILE_NAME
        self._phone_to_channel: dict[str, str] = {}
        self._channel_to_phone: dict[str, str] = {}
        self._statuses: dict[str, str] = {}
        self._closing: set[str] = set()
        self._load()

    def _load(self) -> None:
        for phone, channel_id in read_json(self.map_path, {}).items():
            phone_key = normalize_phone(phone)
            if not phone_key or not channel_id:
                continue
            self._bind(phone_key, str(channel_id))
        self._statuses = {
            str(channel_id): status
            for channel_id, status in read_json(self.status_path, {}).items()
            if status in _KNOWN_STATUSES
        }

    def _bind(self, phone: str, channel_id: str) -> None:
        stale_channel = self._phone_to_channel.pop(phone, None)
        if stale_channel is not None:
            self._channel_to_phone.pop(stale_channel, None)
        stale_phone = self._channel_to_phone.pop(channel_id, None)
        if stale_phone is not None:
            self._phone_to_channel.pop(stale_phone, None)
        self._phone_to_channel[phone] = channel_id
        self._channel_to_phone[channel_id] = phone

    def _persist_mappings(self) -> None:
        try:
            write_json_atomic(self.map_path, dict(self._phone_to_channel))
        except OSError:
            LOGGER.exception("Failed to persist channel map %s", self.map_path)

    def _persist_statuses(self) -> None:
        try:
            write_json_atomic(self.status_path, dict(self._statuses))
        except OSError:
            LOGGER.exception("Failed to persist ticket statuses %s", self.status_path)

    # mapping

    def set_mapping(self, phone: str, channel_id: int | str) -> None:
        phone_key = normalize_phone(phone)
        if not phone_key:
            raise ValueError("phone number is required")
        self._bind(phone_key, str(channel_id))
        self._persist_mappings()

    def remove_mapping(self, phone: str) -> str | None:
        channel_id = self._phone_to_channel.pop(normalize_phone(phone), None)
        if channel_id is None:
            return None
        self._channel_to_phone.pop(channel_id, None)
        self._persist_mappings()
        return channel_id

    def remove_mapping_by_channel(self, channel_id: int | str) -> str | None:
        phone = self._channel_to_phone.pop(str(channel_id), None)
        if phone is None:
            return None
        self._phone_to_channel.pop(phone, None)
        self._persist_mappings()
        return phone

    def get_channel_id(self, phone: str) -> str | None:
        return self._phone_to_channel.get(normalize_phone(phone))

    def get_phone(self, channel_id: int | str) -> str | None:
        return self._channel_to_phone.get(str(channel_id))

    def all_mappings(self) -> dict[str, str]:
        return dict(self._phone_to_channel)

    # status

    def get_status(self, channel_id: int | str) -> str | None:
        return self._statuses.get(str(channel_id))

    def set_status(self, channel_id: int | str, status: str) -> None:
        key = str(channel_id)
        current = self._statuses.get(key)
        if current == status:
            return
        if status not in TICKET_TRANSITIONS.get(current, frozenset()):
            raise TicketStateError(f"Ticket {key} cannot move from {current} to {status}.")
        self._statuses[key] = status
        self._persist_statuses()

    def is_closed(self, channel_id: int | str) -> bool:
        key = str(channel_id)
        if key in self._closing:
            return True
        return self._statuses.get(key) in (TICKET_STATUS_CLOSING, TICKET_STATUS_CLOSED)

    def channels_with_status(self, status: str) -> list[str]:
        return [channel_id for channel_id, value in self._statuses.items() if value == status]

    def try_begin_closing(self, channel_id: int | str) -> bool:
        key = str(channel_id)
        if self.is_closed(key):
            return False
        self._closing.add(key)
        if key not in self._statuses:
            # untracked channels (legacy data) are recorded as open first
            self._statuses[key] = TICKET_STATUS_OPEN
        self.set_status(key, TICKET_STATUS_CLOSING)
        return True

    def release_closing(self, channel_id: int | str) -> None:
        self._closing.discard(str(channel_id))
