from __future__ import annotations

import logging
from pathlib import Path

from storage.json_files import read_json, write_json_atomic
from utils.constants import CONTACTS_FILE_NAME
from utils.formatting import normalize_phone

LOGGER = logging.getLogger(__name__)


class ContactBook:
    """Display names WhatsApp contacts gave us, keyed by phone number."""

    def __init__(self, instance_dir: Path) -> None:
        self.path = Path(instance_dir) / CONTACTS_FILE_NAME
        self._names: dict[str, str] = {
            normalize_phone(phone): str(name)
            for phone, name in read_json(self.path, {}).items()
            if name
        }

    def get(self, phone: str) -> str | None:
        return self._names.get(normalize_phone(phone))

    def knows(self, phone: str) -> bool:
        return normalize_phone(phone) in self._names

    def set(self, phone: str, name: str) -> None:
        key = normalize_phone(phone)
        cleaned = (name or "").strip()
        if not key or not cleaned:
            return
        self._names[key] = cleaned[:80]
        try:
            write_json_atomic(self.path, self._names)
        except OSError:
            LOGGER.exception("Failed to persist contacts to %s", self.path)
