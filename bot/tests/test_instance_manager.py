from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeDiscord, FakeSession
from core.config import AppConfig
from core.errors import ValidationError
from services.instance import InstanceOptions
from services.instance_manager import InstanceManager
from storage.config_store import ConfigStore
from utils.constants import QR_TIMEOUT


class SessionFactory:
    def __init__(self, pairing: str | None = "ready", broken: set[str] | None = None) -> None:
        self.pairing = pairing
        self.broken = broken or set()
        self.sessions: dict[str, FakeSession] = {}

    def __call__(self, instance_id: str, auth_dir: Path) -> FakeSession:
        if instance_id in self.broken:
            raise RuntimeError(f"no session for {instance_id}")
        session = FakeSession(instance_id, auth_dir)
        session.pairing = self.pairing
        self.sessions[instance_id] = session
        return session


def _manager(app_config: AppConfig, fake: FakeDiscord, factory: SessionFactory) -> InstanceManager:
    store = ConfigStore(Path(app_config.storage.data_directory))
    return InstanceManager(app_config, store, client=fake.client, session_factory=factory)


def _seed_auth(store: ConfigStore, instance_id: str) -> None:
    auth = store.instance_dir(instance_id) / "auth"
    auth.mkdir(parents=True, exist_ok=True)
    (auth / "creds.json").write_text("{}", encoding="utf-8")


@pytest.mark.asyncio
async def test_create_instance_is_found_by_guild(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())

    await manager.create_instance(InstanceOptions(guild_id="G1", category_id="C1"))

    instance = manager.get_by_guild_id("G1")
    assert instance is not None
    assert instance.category_id == "C1"
    assert instance.is_live()
    for name in ("auth", "temp", "transcripts", "assets", "logs"):
        assert (manager.store.instance_dir("G1") / name).is_dir()


@pytest.mark.asyncio
async def test_create_instance_is_idempotent(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())

    first = await manager.create_instance(InstanceOptions(guild_id="G1", category_id="C1"))
    second = await manager.create_instance(InstanceOptions(guild_id="G1", category_id="C2"))

    assert first is second
    assert second.category_id == "C2"
    assert manager.store.identity("G1")["categoryId"] == "C2"


@pytest.mark.asyncio
async def test_custom_settings_stay_out_of_index(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())

    await manager.create_instance(
        InstanceOptions(
            guild_id="G1",
            category_id="C1",
            transcript_channel_id="T1",
            custom_settings={"welcomeMessage": "Hi there"},
        )
    )

    index = json.loads(manager.store.index_path.read_text(encoding="utf-8"))
    assert index["G1"] == {
        "guildId": "G1",
        "categoryId": "C1",
        "transcriptChannelId": "T1",
        "vouchChannelId": None,
    }
    settings = manager.store.load("G1")
    assert settings["welcomeMessage"] == "Hi there"
    assert settings["instanceStatus"] == "active"


def test_lookup_falls_back_to_temporary_view(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())
    manager.store.register("G9", {"guildId": "G9", "categoryId": "C9"})
    manager.store.save("G9", {"closingMessage": "Bye"})

    instance = manager.get_by_guild_id("G9")

    assert instance is not None
    assert instance.is_temporary is True
    assert instance.is_live() is False
    assert instance.setting("closingMessage") == "Bye"
    assert "G9" not in manager.instances
    assert manager.get_by_guild_id("unknown") is None


@pytest.mark.asyncio
async def test_save_instance_settings_updates_live_instance(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())
    instance = await manager.create_instance(InstanceOptions(guild_id="G1", category_id="C1"))

    assert manager.save_instance_settings("G1", {"vouchEnabled": False, "vouchChannelId": "V1"})

    assert instance.setting("vouchEnabled") is False
    assert instance.vouch_channel_id == "V1"
    assert manager.store.identity("G1")["vouchChannelId"] == "V1"


@pytest.mark.asyncio
async def test_generate_qr_returns_payload(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory(pairing="qr"))

    result = await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1"))

    assert result == "QR-PAYLOAD"
    assert manager.instances["G1"].current_qr() == "QR-PAYLOAD"


@pytest.mark.asyncio
async def test_generate_qr_when_session_links_immediately(app_config, fake_discord) -> None:
    factory = SessionFactory(pairing="ready")
    manager = _manager(app_config, fake_discord, factory)

    assert await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1")) is None
    assert factory.sessions["G1"].is_connected()
    # already linked: nothing to scan
    assert await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1")) is None


@pytest.mark.asyncio
async def test_generate_qr_times_out(app_config, fake_discord) -> None:
    app_config.whatsapp.qr_timeout_seconds = 0
    manager = _manager(app_config, fake_discord, SessionFactory(pairing=None))

    assert await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1")) == QR_TIMEOUT


@pytest.mark.asyncio
async def test_generate_qr_requires_category(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())
    with pytest.raises(ValidationError):
        await manager.generate_qr_code(InstanceOptions(guild_id="G1"))


@pytest.mark.asyncio
async def test_full_disconnect_removes_everything(app_config, fake_discord) -> None:
    factory = SessionFactory()
    manager = _manager(app_config, fake_discord, factory)
    await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1"))
    _seed_auth(manager.store, "G1")

    assert await manager.disconnect("G1", full_cleanup=True)

    assert factory.sessions["G1"].disconnect_calls == [True]
    assert manager.get_by_guild_id("G1") is None
    assert not (manager.store.instance_dir("G1") / "auth").exists()


@pytest.mark.asyncio
async def test_whatsapp_disconnect_keeps_settings(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())
    await manager.generate_qr_code(
        InstanceOptions(guild_id="G1", category_id="C1", custom_settings={"introMessage": "Hey"})
    )
    _seed_auth(manager.store, "G1")

    assert await manager.disconnect("G1", full_cleanup=False)

    settings = manager.store.load("G1")
    assert settings["introMessage"] == "Hey"
    assert settings["instanceStatus"] == "inactive"
    assert manager.store.identity("G1")["categoryId"] == "C1"
    assert not (manager.store.instance_dir("G1") / "auth").exists()


@pytest.mark.asyncio
async def test_stop_service_keeps_auth(app_config, fake_discord) -> None:
    factory = SessionFactory()
    manager = _manager(app_config, fake_discord, factory)
    await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1"))
    _seed_auth(manager.store, "G1")

    assert await manager.stop_service("G1")

    assert factory.sessions["G1"].disconnect_calls == [False]
    assert (manager.store.instance_dir("G1") / "auth" / "creds.json").exists()
    assert manager.store.load("G1")["instanceStatus"] == "inactive"


@pytest.mark.asyncio
async def test_reconnect_uses_stored_auth_first(app_config, fake_discord) -> None:
    factory = SessionFactory()
    manager = _manager(app_config, fake_discord, factory)
    await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1"))
    await manager.stop_service("G1")
    session = factory.sessions["G1"]
    session.connect_calls.clear()

    assert await manager.reconnect("G1") is None
    assert session.connect_calls == [False]
    assert manager.store.load("G1")["instanceStatus"] == "active"


@pytest.mark.asyncio
async def test_reconnect_falls_back_to_new_qr(app_config, fake_discord) -> None:
    app_config.whatsapp.reconnect_timeout_seconds = 0
    factory = SessionFactory(pairing="qr")
    manager = _manager(app_config, fake_discord, factory)
    await manager.create_instance(InstanceOptions(guild_id="G1", category_id="C1"))

    assert await manager.reconnect("G1") == "QR-PAYLOAD"
    assert factory.sessions["G1"].connect_calls == [False, True]


@pytest.mark.asyncio
async def test_initialize_isolates_failures(app_config, fake_discord) -> None:
    factory = SessionFactory(broken={"BAD"})
    manager = _manager(app_config, fake_discord, factory)
    for instance_id in ("BAD", "GOOD", "NOAUTH", "PAUSED"):
        manager.store.register(instance_id, {"guildId": instance_id, "categoryId": "C1"})
    _seed_auth(manager.store, "BAD")
    _seed_auth(manager.store, "GOOD")
    _seed_auth(manager.store, "PAUSED")
    manager.store.save("PAUSED", {"instanceStatus": "inactive"})

    connected = await manager.initialize_all_instances()

    assert connected == 1
    assert set(manager.instances) == {"GOOD", "NOAUTH", "PAUSED"}
    assert factory.sessions["GOOD"].is_connected()
    assert factory.sessions["NOAUTH"].connect_calls == []
    assert factory.sessions["PAUSED"].connect_calls == []


@pytest.mark.asyncio
async def test_status_report_lists_live_instances(app_config, fake_discord) -> None:
    manager = _manager(app_config, fake_discord, SessionFactory())
    await manager.generate_qr_code(InstanceOptions(guild_id="G1", category_id="C1"))

    rows = manager.status_report()

    assert len(rows) == 1
    assert rows[0]["guild_id"] == "G1"
    assert rows[0]["connected"] is True
    assert rows[0]["open_tickets"] == 0
    assert manager.status_report("missing") == []
