from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.errors import TicketStateError
from services.channel_manager import TicketChannelManager


def test_mapping_is_one_to_one(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_mapping("15551234567", 1)
    manager.set_mapping("15559990000", 2)

    # re-pointing a phone frees its old channel
    manager.set_mapping("15551234567", 3)
    assert manager.get_channel_id("15551234567") == "3"
    assert manager.get_phone(1) is None

    # claiming a channel drops the phone that held it
    manager.set_mapping("15557770000", 2)
    assert manager.get_channel_id("15559990000") is None
    assert manager.get_phone(2) == "15557770000"

    mappings = manager.all_mappings()
    assert len(set(mappings.values())) == len(mappings)


def test_phone_numbers_are_normalised(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_mapping("15551234567@s.whatsapp.net", 10)
    assert manager.get_channel_id("+1 (555) 123-4567") == "10"
    assert manager.remove_mapping("15551234567") == "10"
    assert manager.get_phone(10) is None


def test_empty_phone_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        TicketChannelManager(tmp_path).set_mapping("", 5)


def test_status_only_moves_forward(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    with pytest.raises(TicketStateError):
        manager.set_status(7, "closed")

    manager.set_status(7, "open")
    manager.set_status(7, "open")
    with pytest.raises(TicketStateError):
        manager.set_status(7, "closed")

    manager.set_status(7, "closing")
    manager.set_status(7, "closed")
    with pytest.raises(TicketStateError):
        manager.set_status(7, "open")
    assert manager.get_status(7) == "closed"


def test_try_begin_closing_only_wins_once(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_mapping("15551234567", 42)
    manager.set_status(42, "open")

    assert manager.is_closed(42) is False
    assert manager.try_begin_closing(42) is True
    assert manager.try_begin_closing(42) is False
    assert manager.get_status(42) == "closing"
    assert manager.is_closed(42) is True


def test_closing_untracked_channel_goes_through_open(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_mapping("15551234567", 42)
    seen: list[tuple[str | None, str]] = []
    original = manager.set_status

    def _record(channel_id, status):
        seen.append((manager.get_status(channel_id), status))
        original(channel_id, status)

    monkeypatch.setattr(manager, "set_status", _record)

    assert manager.try_begin_closing(42) is True
    assert seen == [("open", "closing")]
    assert manager.get_status(42) == "closing"
    assert json.loads(manager.status_path.read_text(encoding="utf-8")) == {"42": "closing"}


def test_state_survives_restart(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_mapping("15551234567", 42)
    manager.set_status(42, "open")
    manager.try_begin_closing(42)

    reloaded = TicketChannelManager(tmp_path)
    assert reloaded.get_channel_id("15551234567") == "42"
    assert reloaded.get_status(42) == "closing"
    assert reloaded.is_closed(42) is True
    assert reloaded.channels_with_status("closing") == ["42"]


def test_release_keeps_persisted_status(tmp_path: Path) -> None:
    manager = TicketChannelManager(tmp_path)
    manager.set_status(5, "open")
    manager.try_begin_closing(5)
    manager.release_closing(5)
    assert manager.is_closed(5) is True


def test_corrupt_files_load_empty(tmp_path: Path) -> None:
    (tmp_path / "channel_map.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "ticket_status.json").write_text(json.dumps({"9": "bogus", "10": "open"}), encoding="utf-8")

    manager = TicketChannelManager(tmp_path)
    assert manager.all_mappings() == {}
    assert manager.get_status(9) is None
    assert manager.get_status(10) == "open"
