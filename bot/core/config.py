from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import yaml
from dotenv import load_dotenv

T = TypeVar("T")

DEFAULT_EXTENSIONS = ("cogs.events", "cogs.tickets", "cogs.admin")


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    prefix: str = "!"
    application_id: int | None = None
    sync_commands_on_start: bool = True
    status_text: str = "WhatsApp tickets"
    activity_type: str = "watching"
    allowed_mentions_everyone: bool = False


@dataclass(slots=True)
class StorageConfig:
    data_directory: str = "data"


@dataclass(slots=True)
class WhatsAppConfig:
    http_url: str = "http://localhost:3000"
    ws_url: str = "ws://localhost:3000"
    api_key: str = ""
    qr_timeout_seconds: int = 60
    reconnect_timeout_seconds: int = 30
    request_timeout_seconds: int = 15


@dataclass(slots=True)
class TicketConfig:
    delete_delay_seconds: float = 5.0
    channel_prefix: str = "📋-"
    channel_name_max_length: int = 25
    setup_session_ttl_seconds: int = 900


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 900


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "bridge.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)
    enabled_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))


def _env(name: str) -> str | None:
    value = (os.getenv(name) or "").strip()
    return value or None


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class _Section:
    """Typed reads from one YAML mapping, with an optional environment override per key."""

    def __init__(self, raw: dict[str, Any], name: str) -> None:
        data = raw.get(name)
        self.name = name
        self.data: dict[str, Any] = data if isinstance(data, dict) else {}

    def get(self, key: str, default: T, cast: Callable[[Any], T], env: str | None = None) -> T:
        value = _env(env) if env else None
        if value is None:
            value = self.data.get(key)
        if value is None:
            return default
        try:
            return cast(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{self.name}.{key} has an invalid value: {value!r}") from exc

    def text(self, key: str, default: str, env: str | None = None) -> str:
        return self.get(key, default, str, env)

    def url(self, key: str, default: str, env: str | None = None) -> str:
        return self.text(key, default, env).rstrip("/")

    def integer(self, key: str, default: int, env: str | None = None) -> int:
        return self.get(key, default, int, env)

    def number(self, key: str, default: float, env: str | None = None) -> float:
        return self.get(key, default, float, env)

    def flag(self, key: str, default: bool, env: str | None = None) -> bool:
        return self.get(key, default, _to_bool, env)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return raw


def load_config(config_path: Path) -> AppConfig:
    """Read ``config.yaml``; a ``.env`` beside the ``config`` folder fills in secrets."""
    load_dotenv(config_path.parent.parent / ".env")
    raw = _load_yaml(config_path)

    discord_section = _Section(raw, "discord")
    token = discord_section.text("token", "", env="DISCORD_TOKEN")
    if not token or "${" in token:
        raise ConfigError("DISCORD_TOKEN is required")
    application_id = discord_section.get("application_id", None, int, env="DISCORD_APPLICATION_ID")

    storage = _Section(raw, "storage")
    whatsapp = _Section(raw, "whatsapp")
    tickets = _Section(raw, "tickets")
    redis_section = _Section(raw, "redis")
    log_section = _Section(raw, "logging")
    api = _Section(raw, "fastapi")

    extensions = raw.get("enabled_extensions") or list(DEFAULT_EXTENSIONS)
    if not isinstance(extensions, list):
        raise ConfigError("enabled_extensions must be a list")

    return AppConfig(
        discord=DiscordConfig(
            token=token,
            prefix=discord_section.text("prefix", "!", env="BOT_PREFIX"),
            application_id=application_id,
            sync_commands_on_start=discord_section.flag("sync_commands_on_start", True, env="SYNC_COMMANDS"),
            status_text=discord_section.text("status_text", "WhatsApp tickets"),
            activity_type=discord_section.text("activity_type", "watching"),
            allowed_mentions_everyone=discord_section.flag("allowed_mentions_everyone", False),
        ),
        storage=StorageConfig(
            data_directory=storage.text("data_directory", "data", env="BRIDGE_DATA_DIR"),
        ),
        whatsapp=WhatsAppConfig(
            http_url=whatsapp.url("http_url", "http://localhost:3000", env="WHATSAPP_BRIDGE_URL"),
            ws_url=whatsapp.url("ws_url", "ws://localhost:3000", env="WHATSAPP_BRIDGE_WS_URL"),
            api_key=whatsapp.text("api_key", "", env="WHATSAPP_BRIDGE_API_KEY"),
            qr_timeout_seconds=whatsapp.integer("qr_timeout_seconds", 60),
            reconnect_timeout_seconds=whatsapp.integer("reconnect_timeout_seconds", 30),
            request_timeout_seconds=whatsapp.integer("request_timeout_seconds", 15),
        ),
        tickets=TicketConfig(
            delete_delay_seconds=tickets.number("delete_delay_seconds", 5.0),
            channel_prefix=tickets.text("channel_prefix", "📋-"),
            channel_name_max_length=tickets.integer("channel_name_max_length", 25),
            setup_session_ttl_seconds=tickets.integer("setup_session_ttl_seconds", 900),
        ),
        redis=RedisConfig(
            enabled=redis_section.flag("enabled", False, env="REDIS_ENABLED"),
            url=redis_section.text("url", "redis://localhost:6379/0", env="REDIS_URL"),
            default_ttl=redis_section.integer("default_ttl", 900, env="REDIS_DEFAULT_TTL"),
        ),
        logging=LoggingConfig(
            level=log_section.text("level", "INFO", env="LOG_LEVEL"),
            directory=log_section.text("directory", "logs"),
            file_name=log_section.text("file_name", "bridge.log"),
            max_bytes=log_section.integer("max_bytes", 10_000_000),
            backup_count=log_section.integer("backup_count", 10),
            json_console=log_section.flag("json_console", False),
        ),
        fastapi=FastApiConfig(
            enabled=api.flag("enabled", False),
            host=api.text("host", "0.0.0.0"),
            port=api.integer("port", 8000),
            api_key=api.text("api_key", "", env="STATUS_API_KEY"),
        ),
        enabled_extensions=[str(name) for name in extensions],
    )
