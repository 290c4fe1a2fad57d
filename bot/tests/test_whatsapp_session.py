from __future__ import annotations

from pathlib import Path

import pytest

from core.config import WhatsAppConfig
from core.errors import WhatsAppUnavailableError
from services.whatsapp import BridgeWhatsAppSession, IncomingMessage


def test_incoming_message_from_bridge_payload() -> None:
    message = IncomingMessage.from_bridge(
        {
            "id": "ABC",
            "from": "15551234567@s.whatsapp.net",
            "body": "hello",
            "pushName": "Ann",
            "timestamp": 1700000000,
            "sequence": 4,
            "attachments": [{"url": "https://cdn/x.jpg"}],
        }
    )
    assert message.message_id == "ABC"
    assert message.phone == "15551234567"
    assert message.push_name == "Ann"
    assert message.sequence == 4
    assert message.is_group is False
    assert message.attachments == [{"url": "https://cdn/x.jpg"}]

    group = IncomingMessage.from_bridge({"id": "G", "from": "123-456@g.us", "body": "hi"})
    assert group.is_group is True
    assert group.sequence is None


@pytest.mark.asyncio
async def test_events_reach_handlers_and_failures_are_contained(tmp_path: Path) -> None:
    session = BridgeWhatsAppSession("111", WhatsAppConfig(), tmp_path / "auth")
    received: list[object] = []

    async def broken(message: IncomingMessage) -> None:
        raise RuntimeError("handler bug")

    async def on_message(message: IncomingMessage) -> None:
        received.append(message.text)

    async def on_qr(qr: str) -> None:
        received.append(("qr", qr))

    async def on_ready() -> None:
        received.append("ready")

    async def on_disconnected(reason: str | None) -> None:
        received.append(("gone", reason))

    session.on_message(broken)
    session.on_message(on_message)
    session.on_qr(on_qr)
    session.on_ready(on_ready)
    session.on_disconnected(on_disconnected)

    await session._handle_event({"type": "qr", "qr": "CODE"})
    await session._handle_event({"type": "ready"})
    assert session.is_connected()
    await session._handle_event({"type": "message", "message": {"id": "1", "from": "1555", "body": "yo"}})
    await session._handle_event({"type": "disconnected", "reason": "replaced"})

    assert received == [("qr", "CODE"), "ready", "yo", ("gone", "replaced")]
    assert session.is_connected() is False


@pytest.mark.asyncio
async def test_send_requires_connection(tmp_path: Path) -> None:
    session = BridgeWhatsAppSession("111", WhatsAppConfig(), tmp_path / "auth")
    with pytest.raises(WhatsAppUnavailableError):
        await session.send_message("15551234567", "hi")
