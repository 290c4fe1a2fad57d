from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from storage.json_files import read_json, write_json_atomic
from utils.constants import (
    CHANNEL_IDENTITY_FIELDS,
    IDENTITY_FIELDS,
    INDEX_FILE_NAME,
    INSTANCES_DIR_NAME,
    SETTINGS_FILE_NAME,
)

LOGGER = logging.getLogger(__name__)


def identity_subset(data: dict[str, Any], fields: tuple[str, ...] = IDENTITY_FIELDS) -> dict[str, Any]:
    return {key: data[key] for key in fields if key in data}


class ConfigStore:
    """Single owner of ``instance_configs.json`` and every ``instances/<id>/settings.json``.

    The index carries identity only (guild, category and channel ids). Templates,
    feature flags and special-channel rules live exclusively in the per-instance
    settings file.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.instances_dir = self.data_dir / INSTANCES_DIR_NAME
        self.index_path = self.data_dir / INDEX_FILE_NAME
        self.instances_dir.mkdir(parents=True, exist_ok=True)

    def instance_dir(self, instance_id: str) -> Path:
        return self.instances_dir / str(instance_id)

    def settings_path(self, instance_id: str) -> Path:
        return self.instance_dir(instance_id) / SETTINGS_FILE_NAME

    def load(self, instance_id: str) -> dict[str, Any]:
        return dict(read_json(self.settings_path(instance_id), {}))

    def save(self, instance_id: str, partial: dict[str, Any]) -> bool:
        instance_id = str(instance_id)
        current = self.load(instance_id)
        merged = {**current, **partial}
        try:
            write_json_atomic(self.settings_path(instance_id), merged)
        except OSError:
            LOGGER.exception("Failed to write settings for instance %s", instance_id)
            return False

        identity = identity_subset(partial, CHANNEL_IDENTITY_FIELDS)
        if not identity:
            return True
        return self._update_index(instance_id, identity)

    def register(self, instance_id: str, identity: dict[str, Any]) -> bool:
        return self._update_index(str(instance_id), identity_subset(identity))

    def remove(self, instance_id: str) -> bool:
        index = self.list_all()
        if str(instance_id) not in index:
            return True
        index.pop(str(instance_id))
        try:
            write_json_atomic(self.index_path, index)
        except OSError:
            LOGGER.exception("Failed to remove instance %s from index", instance_id)
            return False
        return True

    def list_all(self) -> dict[str, dict[str, Any]]:
        raw = read_json(self.index_path, {})
        return {
            str(key): identity_subset(value)
            for key, value in raw.items()
            if isinstance(value, dict)
        }

    def identity(self, instance_id: str) -> dict[str, Any] | None:
        return self.list_all().get(str(instance_id))

    def _update_index(self, instance_id: str, identity: dict[str, Any]) -> bool:
        index = self.list_all()
        entry = index.setdefault(instance_id, {"guildId": instance_id})
        entry.update(identity)
        try:
            write_json_atomic(self.index_path, index)
        except OSError:
            LOGGER.exception("Failed to update index for instance %s", instance_id)
            return False
        return True
