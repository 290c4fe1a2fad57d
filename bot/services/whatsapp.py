from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import aiohttp

from core.config import WhatsAppConfig
from core.errors import WhatsAppUnavailableError
from utils.formatting import normalize_phone

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IncomingMessage:
    message_id: str
    phone: str
    text: str
    push_name: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    timestamp: int = 0
    sequence: int | None = None
    from_me: bool = False
    is_group: bool = False

    @classmethod
    def from_bridge(cls, data: dict[str, Any]) -> IncomingMessage:
        sender = str(data.get("from") or "")
        sequence = data.get("sequence")
        return cls(
            message_id=str(data.get("id") or ""),
            phone=normalize_phone(sender),
            text=str(data.get("body") or ""),
            push_name=data.get("pushName") or (data.get("contact") or {}).get("name"),
            attachments=list(data.get("attachments") or []),
            timestamp=int(data.get("timestamp") or 0),
            sequence=int(sequence) if sequence is not None else None,
            from_me=bool(data.get("fromMe", False)),
            is_group=sender.endswith("@g.us"),
        )


MessageHandler = Callable[[IncomingMessage], Awaitable[None]]
QrHandler = Callable[[str], Awaitable[None]]
StateHandler = Callable[[], Awaitable[None]]
DisconnectHandler = Callable[[str | None], Awaitable[None]]


class WhatsAppSession(Protocol):
    """One WhatsApp account connection owned by an instance."""

    async def connect(self, show_qr: bool) -> bool: ...
    async def disconnect(self, logout: bool) -> None: ...
    def is_connected(self) -> bool: ...
    async def send_message(self, phone: str, text: str) -> None: ...
    def on_message(self, handler: MessageHandler) -> None: ...
    def on_ready(self, handler: StateHandler) -> None: ...
    def on_disconnected(self, handler: DisconnectHandler) -> None: ...
    def on_qr(self, handler: QrHandler) -> None: ...


async def _dispatch(handlers: list[Callable[..., Awaitable[None]]], *args: Any) -> None:
    for handler in list(handlers):
        try:
            await handler(*args)
        except Exception:
            LOGGER.exception("WhatsApp event handler %r failed", handler)


class BridgeWhatsAppSession(WhatsAppSession):
    """Client for a multi-session WhatsApp bridge service.

    Commands go over HTTP (``/sessions/<id>/...``), events arrive on a WebSocket
    stream per session with ``qr``, ``ready``, ``disconnected`` and ``message``
    payloads.
    """

    def __init__(self, session_id: str, config: WhatsAppConfig, auth_dir: Path) -> None:
        self.session_id = session_id
        self.config = config
        self.auth_dir = auth_dir
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._listener: asyncio.Task[None] | None = None
        self._connected = False
        self._message_handlers: list[MessageHandler] = []
        self._ready_handlers: list[StateHandler] = []
        self._disconnect_handlers: list[DisconnectHandler] = []
        self._qr_handlers: list[QrHandler] = []

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_ready(self, handler: StateHandler) -> None:
        self._ready_handlers.append(handler)

    def on_disconnected(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def on_qr(self, handler: QrHandler) -> None:
        self._qr_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _session_url(self, suffix: str = "") -> str:
        return f"{self.config.http_url}/sessions/{self.session_id}{suffix}"

    def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            headers = {"X-Api-Key": self.config.api_key} if self.config.api_key else None
            self._http = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            )
        return self._http

    async def _post(self, suffix: str, payload: dict[str, Any]) -> dict[str, Any]:
        http = self._ensure_http()
        async with http.post(self._session_url(suffix), json=payload) as resp:
            resp.raise_for_status()
            if resp.content_type == "application/json":
                return dict(await resp.json())
            return {}

    async def connect(self, show_qr: bool) -> bool:
        try:
            result = await self._post(
                "/start",
                {"showQr": show_qr, "authDir": str(self.auth_dir.resolve())},
            )
        except aiohttp.ClientError:
            LOGGER.exception("WhatsApp bridge refused to start session %s", self.session_id)
            return False

        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(
                self._listen(), name=f"whatsapp-events-{self.session_id}"
            )
        if result.get("status") == "connected" and not self._connected:
            self._connected = True
            await _dispatch(self._ready_handlers)
        return True

    async def disconnect(self, logout: bool) -> None:
        was_connected = self._connected
        self._connected = False
        try:
            await self._post("/stop", {"logout": logout})
        except aiohttp.ClientError:
            LOGGER.warning("WhatsApp bridge stop request failed for session %s", self.session_id, exc_info=True)
        finally:
            await self._close_transport()
        if was_connected:
            await _dispatch(self._disconnect_handlers, "logout" if logout else "stopped")

    async def _close_transport(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def send_message(self, phone: str, text: str) -> None:
        if not self._connected:
            raise WhatsAppUnavailableError()
        target = normalize_phone(phone)
        try:
            await self._post("/messages", {"to": f"{target}@s.whatsapp.net", "text": text})
        except aiohttp.ClientError as exc:
            LOGGER.warning("Sending WhatsApp message to %s failed: %s", target, exc)
            raise WhatsAppUnavailableError("The WhatsApp bridge rejected the message.") from exc

    async def _listen(self) -> None:
        http = self._ensure_http()
        url = f"{self.config.ws_url}/sessions/{self.session_id}/events"
        try:
            self._ws = await http.ws_connect(url, heartbeat=30)
        except aiohttp.ClientError:
            LOGGER.exception("Cannot open WhatsApp event stream %s", url)
            return

        async for frame in self._ws:
            if frame.type == aiohttp.WSMsgType.TEXT:
                try:
                    event = json.loads(frame.data)
                except json.JSONDecodeError:
                    LOGGER.warning("Dropping malformed bridge event on %s", self.session_id)
                    continue
                await self._handle_event(event)
            elif frame.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

        if self._connected:
            self._connected = False
            await _dispatch(self._disconnect_handlers, "stream closed")

    async def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "message":
            await _dispatch(self._message_handlers, IncomingMessage.from_bridge(event.get("message") or {}))
        elif event_type == "qr":
            qr = event.get("qr")
            if qr:
                await _dispatch(self._qr_handlers, str(qr))
        elif event_type == "ready":
            self._connected = True
            await _dispatch(self._ready_handlers)
        elif event_type == "disconnected":
            self._connected = False
            await _dispatch(self._disconnect_handlers, event.get("reason"))
        else:
            LOGGER.debug("Ignoring bridge event %s on %s", event_type, self.session_id)
