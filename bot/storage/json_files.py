from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


def read_json(path: Path, default: Any) -> Any:
    """Load a JSON document, falling back to ``default`` when it is missing or unreadable."""
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        LOGGER.warning("Unreadable JSON file %s; treating as empty", path, exc_info=True)
        return default
    if default is not None and not isinstance(data, type(default)):
        LOGGER.warning("Unexpected JSON root in %s (%s); treating as empty", path, type(data).__name__)
        return default
    return data


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize ``data`` fully to a sibling temp file, fsync it, then swap it into place.

    The previous file is only replaced once the new content is on disk.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
