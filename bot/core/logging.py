from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.config import LoggingConfig

_INSTANCE_FIELD = "instance_id"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        instance_id = getattr(record, _INSTANCE_FIELD, None)
        if instance_id:
            payload["instance"] = instance_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


class InstanceLoggerAdapter(logging.LoggerAdapter):
    """Prefixes records with the owning instance id so a shared log stays readable."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        instance_id = self.extra.get(_INSTANCE_FIELD) if self.extra else None
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault(_INSTANCE_FIELD, instance_id)
        kwargs["extra"] = extra
        return f"[{instance_id}] {msg}", kwargs


def instance_logger(name: str, instance_id: str) -> InstanceLoggerAdapter:
    return InstanceLoggerAdapter(logging.getLogger(name), {_INSTANCE_FIELD: instance_id})


_QUIET_LOGGERS = {
    "discord": logging.INFO,
    "discord.gateway": logging.WARNING,
    "aiohttp": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def configure_logging(config: LoggingConfig) -> None:
    """Console plus rotating file output on the root logger; replaces existing handlers."""
    log_dir = Path(config.directory)
    log_dir.mkdir(parents=True, exist_ok=True)

    plain = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console = logging.StreamHandler()
    console.setFormatter(JsonFormatter() if config.json_console else plain)
    rotating = RotatingFileHandler(
        log_dir / config.file_name,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    rotating.setFormatter(plain)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root.addHandler(console)
    root.addHandler(rotating)

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
