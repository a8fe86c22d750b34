"""Tests for channels/cli.py and the transport factory."""

from pathlib import Path
from unittest.mock import patch

import pytest

from channels import (
    ConnectionClosed,
    ConnectionOpened,
    MessageKind,
    MessageReceived,
    TransportError,
    create_transport,
)
from channels.cli import CLISession, CLITransport, parse_line
from channels.evolution import EvolutionTransport
from config import Config

CHAT = "15551234567@s.whatsapp.net"


class TestParseLine:
    def test_plain_text(self):
        event = parse_line("  hello there \n", CHAT)
        assert event.kind is MessageKind.TEXT
        assert event.text == "hello there"
        assert event.chat_id == CHAT
        assert not event.from_self

    def test_blank_line_skipped(self):
        assert parse_line("   ", CHAT) is None

    def test_voice_injection(self):
        event = parse_line("!voice /tmp/note.ogg", CHAT)
        assert event.kind is MessageKind.AUDIO
        assert event.payload == Path("/tmp/note.ogg")

    def test_video_with_caption(self):
        event = parse_line("!video /tmp/clip.mp4 what happens here?", CHAT)
        assert event.kind is MessageKind.VIDEO
        assert event.text == "what happens here?"

    def test_media_without_path_skipped(self):
        assert parse_line("!image", CHAT) is None


class TestCLISession:
    @pytest.mark.asyncio
    async def test_lines_then_eof(self):
        lines = iter(["hi", "", "/ping"])

        def fake_input(prompt=""):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError from None

        session = CLISession(CHAT)
        with patch("builtins.input", fake_input):
            events = [e async for e in session.events()]
        assert isinstance(events[0], ConnectionOpened)
        assert [e.event.text for e in events if isinstance(e, MessageReceived)] == ["hi", "/ping"]
        assert events[-1] == ConnectionClosed(reason="end of input", final=True)

    @pytest.mark.asyncio
    async def test_send_prints(self, capsys):
        session = CLISession(CHAT)
        await session.send_text(CHAT, "hello")
        assert capsys.readouterr().out == "Agent> hello\n"

    @pytest.mark.asyncio
    async def test_download_reads_file(self, tmp_path):
        f = tmp_path / "pic.jpg"
        f.write_bytes(b"jpeg")
        event = parse_line(f"!image {f}", CHAT)
        assert await CLISession(CHAT).download_media(event) == b"jpeg"

    @pytest.mark.asyncio
    async def test_download_missing_file(self, tmp_path):
        event = parse_line(f"!image {tmp_path}/nope.jpg", CHAT)
        with pytest.raises(TransportError):
            await CLISession(CHAT).download_media(event)

    @pytest.mark.asyncio
    async def test_closed_session_refuses(self):
        session = CLISession(CHAT)
        await session.close()
        with pytest.raises(TransportError):
            await session.send_text(CHAT, "x")


class TestCreateTransport:
    def test_cli_uses_first_allowed_number(self, config):
        transport = create_transport(config)
        assert isinstance(transport, CLITransport)
        assert transport.chat_id == CHAT

    def test_evolution(self, tmp_path):
        cfg = Config({"transport": {"type": "evolution", "base_url": "http://gw/",
                                    "instance": "bridge", "api_key": "k"},
                      "paths": {"auth_dir": str(tmp_path / "auth")}}, base_dir=tmp_path)
        transport = create_transport(cfg)
        assert isinstance(transport, EvolutionTransport)
        assert transport.base_url == "http://gw"
        assert transport.hub.port == 8787
        assert transport.auth_dir == (tmp_path / "auth").resolve()
