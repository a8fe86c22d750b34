"""Tests for wabridge.py: intake gating, commands, process control."""

import asyncio
import logging
import os
from unittest.mock import patch

import httpx
import pytest

from channels import ConnectionClosed, ConnectionOpened, InboundEvent, MessageKind, MessageReceived
from dispatcher import ERROR_MESSAGE
from errors import TranscriptionFailure
from history import HistoryEntry
from media import VOICE_FAILED_MESSAGE
from wabridge import (
    CLEARED_REPLY,
    PING_REPLY,
    BridgeDaemon,
    _check_pid_file,
    _remove_pid_file,
    _write_pid_file,
)

from conftest import FakeSession, FakeTransport

CHAT = "15551234567@s.whatsapp.net"


class EchoBackend:
    def __init__(self):
        self.calls = []

    async def ask(self, message, history):
        self.calls.append(message)
        return f"echo: {message}"


@pytest.fixture
def daemon(config, fake_session):
    d = BridgeDaemon(config, transport=FakeTransport())
    d.supervisor.slot._current = fake_session
    d.dispatcher.backend = EchoBackend()
    return d


def _text(text, chat=CHAT, from_self=False):
    return InboundEvent(chat_id=chat, from_self=from_self, kind=MessageKind.TEXT, text=text)


class TestIntake:
    @pytest.mark.asyncio
    async def test_text_round_trip(self, daemon, fake_session):
        await daemon.handle_event(_text("hello"))
        await daemon.dispatcher.wait_idle()
        assert fake_session.texts == ["echo: hello"]
        assert [e.user_text for e in daemon.history.load(CHAT)] == ["hello"]

    @pytest.mark.asyncio
    async def test_device_suffixed_sender_accepted(self, daemon, fake_session):
        await daemon.handle_event(_text("hi", chat="15551234567:7@s.whatsapp.net"))
        await daemon.dispatcher.wait_idle()
        assert fake_session.texts == ["echo: hi"]

    @pytest.mark.asyncio
    async def test_stranger_ignored(self, daemon, fake_session):
        await daemon.handle_event(_text("hello", chat="19990000000@s.whatsapp.net"))
        await daemon.dispatcher.wait_idle()
        assert fake_session.sent == []
        assert daemon.dispatcher.backend.calls == []

    @pytest.mark.asyncio
    async def test_ping_bypasses_queue(self, daemon, fake_session):
        await daemon.handle_event(_text("  /PING "))
        assert fake_session.texts == [PING_REPLY]
        assert daemon.dispatcher.pending == 0
        assert daemon.dispatcher.backend.calls == []

    @pytest.mark.asyncio
    async def test_clear_empties_history(self, daemon, fake_session):
        daemon.history.save(CHAT, [HistoryEntry("old", "reply")])
        await daemon.handle_event(_text("/clear"))
        assert daemon.history.load(CHAT) == []
        assert fake_session.texts == [CLEARED_REPLY]

    @pytest.mark.asyncio
    async def test_own_error_notice_not_reprocessed(self, daemon, fake_session):
        await daemon.handle_event(_text(ERROR_MESSAGE, from_self=True))
        await daemon.dispatcher.wait_idle()
        assert daemon.dispatcher.backend.calls == []

    @pytest.mark.asyncio
    async def test_self_chat_message_processed(self, daemon, fake_session):
        await daemon.handle_event(_text("note to self", from_self=True))
        await daemon.dispatcher.wait_idle()
        assert daemon.dispatcher.backend.calls == ["note to self"]

    @pytest.mark.asyncio
    async def test_voice_failure_notifies(self, daemon, fake_session):
        event = InboundEvent(CHAT, False, MessageKind.AUDIO)
        with patch.object(daemon.media, "normalize", side_effect=TranscriptionFailure("bad")):
            await daemon.handle_event(event)
        assert fake_session.texts == [VOICE_FAILED_MESSAGE]
        assert daemon.dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_text_queued_while_reconnecting(self, config):
        d = BridgeDaemon(config, transport=FakeTransport())
        assert not d.supervisor.slot.occupied
        with patch.object(d.dispatcher, "submit") as submit:
            await d.handle_event(_text("hello"))
        [call] = submit.call_args_list
        request = call.args[0]
        assert (request.chat_id, request.prompt_text) == (CHAT, "hello")

    @pytest.mark.asyncio
    async def test_voice_while_reconnecting_gets_failure_notice(self, config):
        d = BridgeDaemon(config, transport=FakeTransport())
        with patch.object(d, "_reply") as reply:
            await d.handle_event(InboundEvent(CHAT, False, MessageKind.AUDIO))
        reply.assert_called_once_with(CHAT, VOICE_FAILED_MESSAGE)

    @pytest.mark.asyncio
    async def test_voice_notice_echo_dropped(self, daemon):
        await daemon.handle_event(_text(VOICE_FAILED_MESSAGE, from_self=True))
        await daemon.dispatcher.wait_idle()
        assert daemon.dispatcher.backend.calls == []


class TestLoopExceptionHandler:
    def test_benign_fault_keeps_running(self, daemon):
        loop = asyncio.new_event_loop()
        try:
            for exc in (ConnectionResetError("peer"), httpx.ReadError("eof")):
                daemon._on_loop_exception(loop, {"message": "x", "exception": exc})
        finally:
            loop.close()
        assert daemon.exit_code == 0
        assert not daemon._stop.is_set()

    def test_other_fault_stops_with_exit_1(self, daemon):
        loop = asyncio.new_event_loop()
        try:
            daemon._on_loop_exception(loop, {"message": "boom", "exception": ValueError("bug")})
        finally:
            loop.close()
        assert daemon.exit_code == 1
        assert daemon._stop.is_set()


class TestPidFile:
    def test_write_and_remove(self, tmp_path):
        pid = tmp_path / "state" / "wabridge.pid"
        _write_pid_file(pid)
        assert pid.read_text() == str(os.getpid())
        _remove_pid_file(pid)
        assert not pid.exists()

    def test_live_instance_refused(self, tmp_path):
        pid = tmp_path / "wabridge.pid"
        pid.write_text(str(os.getpid()))
        with pytest.raises(SystemExit):
            _check_pid_file(pid)

    def test_stale_file_removed(self, tmp_path):
        pid = tmp_path / "wabridge.pid"
        pid.write_text("not-a-pid")
        _check_pid_file(pid)
        assert not pid.exists()


class TestRun:
    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for h in root.handlers[:]:
            if h not in handlers:
                root.removeHandler(h)
                h.close()
        root.setLevel(level)

    @pytest.mark.asyncio
    async def test_transport_end_drains_and_exits_cleanly(self, config):
        session = FakeSession([
            ConnectionOpened(),
            MessageReceived(_text("first")),
            MessageReceived(_text("second")),
            ConnectionClosed(reason="end of input", final=True),
        ])
        transport = FakeTransport([session])
        daemon = BridgeDaemon(config, transport=transport)
        daemon.dispatcher.backend = EchoBackend()

        code = await asyncio.wait_for(daemon.run(), timeout=5)

        assert code == 0
        assert session.texts == ["echo: first", "echo: second"]
        assert session.closed
        assert transport.shut_down
        assert not (config.state_dir / "wabridge.pid").exists()
        assert config.log_file.exists()

    @pytest.mark.asyncio
    async def test_stop_request_ends_run(self, config):
        class Endless(FakeSession):
            async def events(self):
                yield ConnectionOpened()
                while not self.closed:
                    await asyncio.sleep(0.01)

        daemon = BridgeDaemon(config, transport=FakeTransport([Endless()]))
        task = asyncio.create_task(daemon.run())
        await asyncio.sleep(0.1)
        daemon.stop()
        assert await asyncio.wait_for(task, timeout=5) == 0
