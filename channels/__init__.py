"""Transport interface and shared types.

Defines the contract between the daemon and the WhatsApp transport.
A Transport opens sessions; a session yields typed lifecycle and message
events and carries the outbound calls for as long as it is live.
"""

from __future__ import annotations

import enum
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from config import Config


class TransportError(Exception):
    """Raised when the transport rejects a call or the connection is gone."""


class MessageKind(enum.Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"


@dataclass
class InboundEvent:
    chat_id: str               # JID of the conversation
    from_self: bool            # Sent by the bridged account itself
    kind: MessageKind
    text: str = ""             # Body, or caption for media
    payload: Any = None        # Transport reference used by download_media()
    message_id: str = ""
    timestamp: float = 0.0


# ─── Lifecycle Events ────────────────────────────────────────────

@dataclass
class PairingRequested:
    code: str                  # Scannable pairing string


@dataclass
class ConnectionOpened:
    pass


@dataclass
class ConnectionClosed:
    status_code: int | None = None
    reason: str = ""
    logged_out: bool = False
    final: bool = False        # Transport is gone for good (e.g. stdin EOF)


@dataclass
class MessageReceived:
    event: InboundEvent


TransportEvent = PairingRequested | ConnectionOpened | ConnectionClosed | MessageReceived


class TransportSession(Protocol):
    def events(self) -> AsyncIterator[TransportEvent]: ...
    async def send_text(self, chat_id: str, text: str) -> None: ...
    async def send_voice(self, chat_id: str, path: Path) -> None: ...
    async def send_document(self, chat_id: str, path: Path, mimetype: str,
                            filename: str) -> None: ...
    async def send_presence(self, chat_id: str, presence: str) -> None: ...
    async def download_media(self, event: InboundEvent) -> bytes: ...
    async def close(self) -> None: ...


class Transport(Protocol):
    async def open_session(self) -> TransportSession: ...
    async def discard_credentials(self) -> None: ...
    async def shutdown(self) -> None: ...


@dataclass
class SentLog:
    """Bounded memory of message ids this process sent."""
    limit: int = 1000
    _ids: dict[str, None] = field(default_factory=dict)

    def add(self, message_id: str) -> None:
        if not message_id:
            return
        self._ids[message_id] = None
        while len(self._ids) > self.limit:
            self._ids.pop(next(iter(self._ids)))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids


def create_transport(config: Config) -> Transport:
    """Factory: create transport from config."""
    kind = config.transport_type

    if kind == "cli":
        from .cli import CLITransport
        allowed = config.allowed_numbers
        return CLITransport(chat_id=allowed[0] if allowed else "cli@s.whatsapp.net")
    if kind == "evolution":
        from .evolution import EvolutionTransport
        return EvolutionTransport(
            base_url=config.evolution_base_url,
            instance=config.evolution_instance,
            api_key=config.evolution_api_key,
            webhook_host=config.webhook_host,
            webhook_port=config.webhook_port,
            auth_dir=config.auth_dir,
        )
    raise ValueError(f"Unknown transport type: {kind!r}")
