"""Shared fixtures for the wabridge test suite.

All tests use temporary directories and fake transports.
Nothing talks to WhatsApp, the gateway, or the claude CLI.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from channels import ConnectionClosed, InboundEvent, MessageKind  # noqa: E402
from config import Config  # noqa: E402
from lifecycle import SessionSlot  # noqa: E402


class FakeSession:
    """In-memory TransportSession that records every outbound call."""

    def __init__(self, events=(), media: bytes | Exception = b""):
        self._events = list(events)
        self.media = media
        self.sent: list[tuple[str, str]] = []
        self.voices: list[tuple[str, Path]] = []
        self.documents: list[tuple[str, Path, str, str]] = []
        self.presence: list[tuple[str, str]] = []
        self.closed = False
        self.fail_send = False

    async def events(self):
        for event in self._events:
            if isinstance(event, Exception):
                raise event
            yield event

    async def send_text(self, chat_id, text):
        if self.fail_send:
            raise ConnectionError("socket closed")
        self.sent.append((chat_id, text))

    async def send_voice(self, chat_id, path):
        self.voices.append((chat_id, Path(path)))

    async def send_document(self, chat_id, path, mimetype, filename):
        self.documents.append((chat_id, Path(path), mimetype, filename))

    async def send_presence(self, chat_id, presence):
        self.presence.append((chat_id, presence))

    async def download_media(self, event):
        if isinstance(self.media, Exception):
            raise self.media
        return self.media

    async def close(self):
        self.closed = True

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


class FakeTransport:
    """Hands out scripted sessions; records credential discards."""

    def __init__(self, sessions=()):
        self.sessions = list(sessions)
        self.opened: list[FakeSession] = []
        self.discarded = 0
        self.shut_down = False

    async def open_session(self):
        if self.sessions:
            session = self.sessions.pop(0)
        else:
            session = FakeSession([ConnectionClosed(reason="end", final=True)])
        if isinstance(session, Exception):
            raise session
        self.opened.append(session)
        return session

    async def discard_credentials(self):
        self.discarded += 1

    async def shutdown(self):
        self.shut_down = True


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def slot(fake_session):
    """A SessionSlot holding fake_session."""
    s = SessionSlot()
    s._current = fake_session
    return s


@pytest.fixture
def text_event():
    """Factory for inbound text events."""
    def _make(text, chat_id="15551234567@s.whatsapp.net", from_self=False):
        return InboundEvent(chat_id=chat_id, from_self=from_self,
                            kind=MessageKind.TEXT, text=text)
    return _make


@pytest.fixture
def config_data(tmp_path):
    """Minimal valid config data (as parsed dict) using the CLI transport."""
    return {
        "access": {"numbers": ["15551234567"], "self_chat": True},
        "backend": {"project_dir": str(tmp_path / "project"), "path": "/usr/bin/claude"},
        "paths": {
            "history_dir": str(tmp_path / "history"),
            "log_dir": str(tmp_path / "logs"),
            "files_dir": str(tmp_path / "files"),
            "media_dir": str(tmp_path / "media"),
            "auth_dir": str(tmp_path / "auth"),
            "state_dir": str(tmp_path / "state"),
        },
        "transport": {"type": "cli"},
    }


@pytest.fixture
def config(config_data, tmp_path):
    (tmp_path / "project").mkdir(exist_ok=True)
    return Config(config_data, base_dir=tmp_path)
