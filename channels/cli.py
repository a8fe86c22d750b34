"""CLI transport: stdin/stdout for testing.

The simplest possible transport. No WhatsApp gateway needed.
Lines starting with !voice, !image or !video followed by a local file path
inject a media message backed by that file.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from pathlib import Path

from . import (
    ConnectionClosed,
    ConnectionOpened,
    InboundEvent,
    MessageKind,
    MessageReceived,
    TransportError,
    TransportEvent,
)

_MEDIA_PREFIXES = {
    "!voice": MessageKind.AUDIO,
    "!image": MessageKind.IMAGE,
    "!video": MessageKind.VIDEO,
}


def parse_line(line: str, chat_id: str) -> InboundEvent | None:
    """Turn one input line into an event, or None to skip it."""
    text = line.strip()
    if not text:
        return None
    head, _, rest = text.partition(" ")
    kind = _MEDIA_PREFIXES.get(head.lower())
    now = time.time()
    if kind is None:
        return InboundEvent(chat_id=chat_id, from_self=False, kind=MessageKind.TEXT,
                            text=text, timestamp=now)
    path, _, caption = rest.strip().partition(" ")
    if not path:
        return None
    return InboundEvent(chat_id=chat_id, from_self=False, kind=kind,
                        text=caption.strip(), payload=Path(path).expanduser(),
                        timestamp=now)


class CLISession:
    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        self._closed = False

    async def events(self) -> AsyncIterator[TransportEvent]:
        yield ConnectionOpened()
        while not self._closed:
            try:
                line = await asyncio.to_thread(input, "You> ")
            except (EOFError, KeyboardInterrupt):
                yield ConnectionClosed(reason="end of input", final=True)
                return
            event = parse_line(line, self.chat_id)
            if event is not None:
                yield MessageReceived(event)

    async def send_text(self, chat_id: str, text: str) -> None:
        self._check()
        print(f"Agent> {text}", flush=True)

    async def send_voice(self, chat_id: str, path: Path) -> None:
        self._check()
        print(f"Agent> [voice note: {path}]", flush=True)

    async def send_document(self, chat_id: str, path: Path, mimetype: str,
                            filename: str) -> None:
        self._check()
        print(f"Agent> [attachment: {filename} ({mimetype})]", flush=True)

    async def send_presence(self, chat_id: str, presence: str) -> None:
        pass

    async def download_media(self, event: InboundEvent) -> bytes:
        path = Path(event.payload)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise TransportError(f"cannot read {path}: {e}") from e

    async def close(self) -> None:
        self._closed = True

    def _check(self) -> None:
        if self._closed:
            raise TransportError("session closed")


class CLITransport:
    def __init__(self, chat_id: str):
        self.chat_id = chat_id

    async def open_session(self) -> CLISession:
        return CLISession(self.chat_id)

    async def discard_credentials(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass
