from __future__ import annotations

import json
from pathlib import Path

import pytest

from storage.config_store import ConfigStore


def _index(store: ConfigStore) -> dict:
    return json.loads(store.index_path.read_text(encoding="utf-8"))


def test_save_merges_partial_updates(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    assert store.save("I1", {"a": 1})
    assert store.save("I1", {"b": 2})
    assert store.load("I1") == {"a": 1, "b": 2}


def test_load_unknown_instance_is_empty(tmp_path: Path) -> None:
    assert ConfigStore(tmp_path).load("missing") == {}


def test_channel_ids_reach_index_and_settings(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    store.save("I1", {"transcriptChannelId": "T1"})

    assert _index(store)["I1"]["transcriptChannelId"] == "T1"
    settings = json.loads(store.settings_path("I1").read_text(encoding="utf-8"))
    assert settings["transcriptChannelId"] == "T1"


def test_index_never_holds_templates_or_flags(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    store.register("I1", {"guildId": "G1", "categoryId": "C1", "welcomeMessage": "hi"})
    store.save("I1", {"welcomeMessage": "hello", "vouchEnabled": False, "categoryId": "C2"})

    entry = _index(store)["I1"]
    assert set(entry) <= {"guildId", "categoryId", "transcriptChannelId", "vouchChannelId"}
    assert entry["categoryId"] == "C2"
    assert store.load("I1")["welcomeMessage"] == "hello"


def test_list_all_filters_foreign_keys(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    store.index_path.write_text(
        json.dumps({"I1": {"guildId": "G1", "closingMessage": "bye"}, "broken": "nope"}),
        encoding="utf-8",
    )
    assert store.list_all() == {"I1": {"guildId": "G1"}}


def test_corrupt_settings_read_as_empty(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    path = store.settings_path("I1")
    path.parent.mkdir(parents=True)
    path.write_text("[1, 2", encoding="utf-8")

    assert store.load("I1") == {}
    assert store.save("I1", {"a": 1})
    assert store.load("I1") == {"a": 1}


def test_remove_drops_index_entry(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    store.register("I1", {"guildId": "G1"})
    store.register("I2", {"guildId": "G2"})

    assert store.remove("I1")
    assert store.identity("I1") is None
    assert store.identity("I2") == {"guildId": "G2"}
    assert store.remove("I1")


def test_writes_leave_no_temp_files(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path)
    store.save("I1", {"a": 1})
    store.save("I1", {"a": 2})
    leftovers = [p.name for p in store.instance_dir("I1").iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_failed_write_keeps_previous_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = ConfigStore(tmp_path)
    assert store.save("I1", {"welcomeMessage": "hello"})

    def _refuse(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("storage.json_files.os.replace", _refuse)

    assert store.save("I1", {"welcomeMessage": "changed"}) is False
    monkeypatch.undo()

    assert store.load("I1") == {"welcomeMessage": "hello"}
    leftovers = [p.name for p in store.instance_dir("I1").iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []
