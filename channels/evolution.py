"""WhatsApp transport via an Evolution API gateway.

Inbound: the gateway POSTs webhook events to a local aiohttp server.
Outbound: REST calls to the gateway (httpx async).

The gateway owns the WhatsApp socket and its Signal sessions; logging the
instance out is how this transport discards credential material.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import shutil
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
from aiohttp import web

from . import (
    ConnectionClosed,
    ConnectionOpened,
    InboundEvent,
    MessageKind,
    MessageReceived,
    PairingRequested,
    SentLog,
    TransportError,
    TransportEvent,
)

log = logging.getLogger(__name__)

_LOGGED_OUT = 401

# Chats that never carry a conversation partner
_IGNORED_CHATS = ("status@broadcast",)

Listener = Callable[[dict], None]


def _event_name(raw: str) -> str:
    """MESSAGES_UPSERT / messages-upsert / messages.upsert -> messages.upsert"""
    return raw.strip().lower().replace("_", ".").replace("-", ".")


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_message(data: dict) -> InboundEvent | None:
    """Normalize one messages.upsert record, or None for unsupported types."""
    key = data.get("key") or {}
    chat_id = key.get("remoteJid", "")
    if not chat_id or chat_id in _IGNORED_CHATS:
        return None

    message = data.get("message") or {}
    if message.get("conversation"):
        kind, text = MessageKind.TEXT, message["conversation"]
    elif message.get("extendedTextMessage"):
        kind, text = MessageKind.TEXT, message["extendedTextMessage"].get("text", "")
    elif message.get("audioMessage"):
        kind, text = MessageKind.AUDIO, ""
    elif message.get("imageMessage"):
        kind, text = MessageKind.IMAGE, message["imageMessage"].get("caption", "")
    elif message.get("videoMessage"):
        kind, text = MessageKind.VIDEO, message["videoMessage"].get("caption", "")
    elif (message.get("documentMessage") or {}).get("caption"):
        kind, text = MessageKind.TEXT, message["documentMessage"]["caption"]
    else:
        return None

    return InboundEvent(
        chat_id=chat_id,
        from_self=bool(key.get("fromMe")),
        kind=kind,
        text=text or "",
        payload={"key": key, "message": message},
        message_id=key.get("id", ""),
        timestamp=float(_as_int(data.get("messageTimestamp")) or time.time()),
    )


def parse_webhook(payload: dict) -> list[TransportEvent]:
    """Translate a gateway webhook payload into transport events."""
    event = _event_name(payload.get("event", ""))
    data = payload.get("data") or {}

    if event == "qrcode.updated":
        qr = data.get("qrcode", data) if isinstance(data, dict) else {}
        code = qr.get("code") if isinstance(qr, dict) else None
        return [PairingRequested(code)] if code else []

    if event == "connection.update":
        state = data.get("state", "")
        if state == "open":
            return [ConnectionOpened()]
        if state == "close":
            status = _as_int(data.get("statusReason"))
            return [ConnectionClosed(
                status_code=status,
                reason=str(data.get("reason") or f"status {status}"),
                logged_out=status == _LOGGED_OUT,
            )]
        return []

    if event == "logout.instance":
        return [ConnectionClosed(status_code=_LOGGED_OUT, reason="logged out", logged_out=True)]

    if event == "messages.upsert":
        records = data if isinstance(data, list) else [data]
        events: list[TransportEvent] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            parsed = parse_message(record)
            if parsed is not None:
                events.append(MessageReceived(parsed))
        return events

    return []


class WebhookHub:
    """Webhook receiver that fans payloads out to attached listeners."""

    def __init__(self, host: str, port: int, instance: str = ""):
        self.host = host
        self.port = port
        self.instance = instance
        self._listeners: list[Listener] = []
        self._runner: web.AppRunner | None = None

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def attach(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def detach(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/webhook", self._handle)
        app.router.add_post("/webhook/{event}", self._handle)
        return app

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Webhook listener on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _handle(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "invalid JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "payload must be an object"}, status=400)

        instance = payload.get("instance")
        if self.instance and instance and instance != self.instance:
            log.debug("Webhook for foreign instance %s ignored", instance)
            return web.json_response({"ok": True})

        if not payload.get("event") and "event" in request.match_info:
            payload["event"] = request.match_info["event"]

        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                log.exception("Webhook listener failed")
        return web.json_response({"ok": True})


class EvolutionSession:
    """One live connection: a REST client plus a hub subscription."""

    def __init__(self, transport: EvolutionTransport, client: httpx.AsyncClient):
        self._transport = transport
        self._client = client
        self._queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._sent = SentLog()
        self._closed = False
        transport.hub.attach(self._on_webhook)

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_webhook(self, payload: dict) -> None:
        if self._closed:
            return
        for event in parse_webhook(payload):
            if isinstance(event, MessageReceived) and event.event.message_id in self._sent:
                continue
            if isinstance(event, ConnectionOpened):
                self._transport.remember_pairing()
            self._queue.put_nowait(event)

    async def start(self) -> None:
        """Report current state: open, or request a pairing code."""
        inst = self._transport.instance
        state = await self._api("GET", f"/instance/connectionState/{inst}")
        if (state.get("instance") or {}).get("state") == "open":
            self._queue.put_nowait(ConnectionOpened())
            self._transport.remember_pairing()
            return
        connect = await self._api("GET", f"/instance/connect/{inst}")
        if (connect.get("instance") or {}).get("state") == "open":
            self._queue.put_nowait(ConnectionOpened())
        elif connect.get("code"):
            self._queue.put_nowait(PairingRequested(connect["code"]))

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def _api(self, method: str, path: str, payload: dict | None = None) -> dict:
        if self._closed:
            raise TransportError("session closed")
        try:
            resp = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Evolution API unreachable ({path}): {e}") from e
        if resp.status_code >= 400:
            raise TransportError(
                f"Evolution API error ({path}): HTTP {resp.status_code} {resp.text[:200]}"
            )
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"result": data}

    def _track(self, response: dict) -> None:
        self._sent.add((response.get("key") or {}).get("id", ""))

    async def send_text(self, chat_id: str, text: str) -> None:
        inst = self._transport.instance
        self._track(await self._api("POST", f"/message/sendText/{inst}",
                                    {"number": chat_id, "text": text}))

    async def send_voice(self, chat_id: str, path: Path) -> None:
        inst = self._transport.instance
        audio = base64.b64encode(path.read_bytes()).decode("ascii")
        self._track(await self._api("POST", f"/message/sendWhatsAppAudio/{inst}",
                                    {"number": chat_id, "audio": audio}))

    async def send_document(self, chat_id: str, path: Path, mimetype: str,
                            filename: str) -> None:
        inst = self._transport.instance
        media = base64.b64encode(path.read_bytes()).decode("ascii")
        self._track(await self._api("POST", f"/message/sendMedia/{inst}", {
            "number": chat_id,
            "mediatype": "document",
            "mimetype": mimetype,
            "media": media,
            "fileName": filename,
        }))

    async def send_presence(self, chat_id: str, presence: str) -> None:
        inst = self._transport.instance
        await self._api("POST", f"/chat/sendPresence/{inst}",
                        {"number": chat_id, "presence": presence, "delay": 0})

    async def download_media(self, event: InboundEvent) -> bytes:
        inst = self._transport.instance
        payload = event.payload or {}
        data = await self._api("POST", f"/chat/getBase64FromMediaMessage/{inst}", {
            "message": {"key": payload.get("key", {})},
            "convertToMp4": False,
        })
        encoded = data.get("base64", "")
        if not encoded:
            raise TransportError("gateway returned no media")
        try:
            return base64.b64decode(encoded)
        except ValueError as e:
            raise TransportError(f"undecodable media payload: {e}") from e

    async def close(self) -> None:
        """Detach from the hub and close the HTTP connection."""
        if self._closed:
            return
        self._closed = True
        self._transport.hub.detach(self._on_webhook)
        self._queue.put_nowait(None)
        await self._client.aclose()


class EvolutionTransport:
    def __init__(
        self,
        base_url: str,
        instance: str,
        api_key: str,
        webhook_host: str = "127.0.0.1",
        webhook_port: int = 8787,
        auth_dir: str | Path = "./auth_info",
        timeout: float = 60.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.instance = instance
        self.api_key = api_key
        self.auth_dir = Path(auth_dir)
        self.timeout = timeout
        self.hub = WebhookHub(webhook_host, webhook_port, instance)
        self._http_transport = http_transport

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"apikey": self.api_key},
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._http_transport,
        )

    async def open_session(self) -> EvolutionSession:
        await self.hub.start()
        session = EvolutionSession(self, self._new_client())
        try:
            await session.start()
        except Exception:
            await session.close()
            raise
        return session

    def remember_pairing(self) -> None:
        """Record the paired instance in the auth directory."""
        try:
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            (self.auth_dir / "instance.json").write_text(json.dumps({
                "instance": self.instance,
                "base_url": self.base_url,
                "paired_at": time.time(),
            }))
        except OSError as e:
            log.warning("Could not record pairing state: %s", e)

    async def discard_credentials(self) -> None:
        """Log the instance out on the gateway and wipe local auth material."""
        async with self._new_client() as client:
            try:
                resp = await client.delete(f"/instance/logout/{self.instance}")
                if resp.status_code >= 400:
                    log.info("Gateway logout returned HTTP %d", resp.status_code)
            except httpx.HTTPError as e:
                log.warning("Gateway logout failed: %s", e)
        shutil.rmtree(self.auth_dir, ignore_errors=True)
        self.auth_dir.mkdir(parents=True, exist_ok=True)

    async def shutdown(self) -> None:
        await self.hub.stop()
