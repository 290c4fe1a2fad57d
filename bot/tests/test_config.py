from __future__ import annotations

from pathlib import Path

import pytest

from core.config import ConfigError, load_config


def _write(tmp_path: Path, body: str) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.yaml"
    config_path.write_text(body.strip(), encoding="utf-8")
    return config_path


def test_load_config_reads_yaml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write(
        tmp_path,
        """
discord:
  token: test-token
  prefix: "?"
storage:
  data_directory: ./state
whatsapp:
  http_url: http://bridge:3000/
  qr_timeout_seconds: 45
tickets:
  delete_delay_seconds: 2.5
  channel_prefix: "wa-"
""",
    )
    for key in ("DISCORD_TOKEN", "BRIDGE_DATA_DIR", "WHATSAPP_BRIDGE_URL"):
        monkeypatch.delenv(key, raising=False)

    cfg = load_config(config_path)

    assert cfg.discord.token == "test-token"
    assert cfg.discord.prefix == "?"
    assert cfg.storage.data_directory == "./state"
    assert cfg.whatsapp.http_url == "http://bridge:3000"
    assert cfg.whatsapp.qr_timeout_seconds == 45
    assert cfg.tickets.delete_delay_seconds == 2.5
    assert cfg.tickets.channel_prefix == "wa-"
    assert cfg.enabled_extensions == ["cogs.events", "cogs.tickets", "cogs.admin"]


def test_env_overrides_yaml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write(
        tmp_path,
        """
discord:
  token: yaml-token
storage:
  data_directory: yaml-data
""",
    )
    monkeypatch.setenv("DISCORD_TOKEN", "env-token")
    monkeypatch.setenv("BRIDGE_DATA_DIR", "env-data")
    monkeypatch.setenv("WHATSAPP_BRIDGE_API_KEY", "secret")

    cfg = load_config(config_path)

    assert cfg.discord.token == "env-token"
    assert cfg.storage.data_directory == "env-data"
    assert cfg.whatsapp.api_key == "secret"


def test_unresolved_token_placeholder_is_rejected(tmp_path: Path, monkeypatch) -> None:
    config_path = _write(tmp_path, "discord:\n  token: ${DISCORD_TOKEN}\n")
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_missing_file_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "config" / "missing.yaml")
