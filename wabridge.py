#!/usr/bin/env python3
"""wabridge: a WhatsApp bridge to the claude CLI.

Entry point. Wires config → transport → supervisor → intake → dispatcher.
Handles PID file, logging, Unix signals, and the main event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Any

import aiohttp
import httpx

from backend import ClaudeBackend
from channels import InboundEvent, MessageKind, Transport, TransportError, create_transport
from config import TRANSPORTS, Config, ConfigError, config_warnings, load_config
from dispatcher import ERROR_MESSAGE, TIMEOUT_MESSAGE, Dispatcher
from egress import Responder
from errors import TranscriptionFailure
from gate import AllowlistGate
from history import HistoryStore
from lifecycle import ConnectionSupervisor
from media import VOICE_FAILED_MESSAGE, MediaPipeline
from noise import NoiseFilter
from speech import ElevenLabsSynthesizer
from transcribe import WhisperTranscriber

log = logging.getLogger("wabridge")

PID_FILE = "wabridge.pid"

PING_REPLY = "Pong! Agent is running."
CLEARED_REPLY = "Conversation history cleared."

# Our own failure notices; seen again in self-chat they must not loop
OWN_NOTICES = (ERROR_MESSAGE, TIMEOUT_MESSAGE, VOICE_FAILED_MESSAGE)

# Faults from a dropped connection; logged, never fatal
BENIGN_FAULTS: tuple[type[BaseException], ...] = (
    TransportError,
    ConnectionError,
    httpx.TransportError,
    aiohttp.ClientConnectionError,
)


# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("Could not remove PID file: %s", e)


class BridgeDaemon:
    def __init__(self, config: Config, transport: Transport | None = None):
        self.config = config
        self.exit_code = 0
        self.inbox: asyncio.Queue[InboundEvent] = asyncio.Queue(maxsize=1000)
        self._stop = asyncio.Event()
        self._ensure_dirs()

        self.transport = transport or create_transport(config)
        self.supervisor = ConnectionSupervisor(
            self.transport, self.inbox,
            max_attempts=config.max_reconnects,
            reconnect_delay=config.reconnect_delay,
        )
        self.gate = AllowlistGate(config.allowed_numbers, config.self_chat_mode,
                                  own_messages=OWN_NOTICES)
        self.history = HistoryStore(config.history_dir, config.max_history)

        transcriber = WhisperTranscriber(config.whisper_path, config.whisper_model,
                                         config.transcribe_timeout)
        self.media = MediaPipeline(config.media_dir, transcriber,
                                   ffmpeg=config.ffmpeg_path, timeout=config.media_timeout)
        synthesizer = ElevenLabsSynthesizer(
            api_key=config.tts_api_key,
            voice_id=config.tts_voice_id,
            output_dir=config.media_dir,
            model_id=config.tts_model_id,
            ffmpeg=config.ffmpeg_path,
            timeout=config.tts_timeout,
            transcode_timeout=config.media_timeout,
        )
        self.responder = Responder(
            self.supervisor.slot, synthesizer,
            reply_mode=config.voice_reply_mode,
            allowed_roots=[config.files_dir, config.project_dir],
            chunk_limit=config.chunk_limit,
        )
        backend = ClaudeBackend(
            executable=config.claude_path,
            project_dir=config.project_dir,
            system_prompt=config.system_prompt,
            files_dir=config.files_dir,
            chrome_path=config.chrome_path,
            timeout=config.claude_timeout,
            model=config.claude_model,
            max_turns=config.max_turns,
        )
        self.dispatcher = Dispatcher(backend, self.history, self.responder)

    def _ensure_dirs(self) -> None:
        cfg = self.config
        for d in (cfg.log_dir, cfg.history_dir, cfg.auth_dir, cfg.media_dir,
                  cfg.files_dir, cfg.state_dir):
            d.mkdir(parents=True, exist_ok=True)

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        noise = NoiseFilter()
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)
        fh.addFilter(noise)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)
        sh.addFilter(noise)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    # ─── Intake ──────────────────────────────────────────────────

    async def _reply(self, chat_id: str, text: str) -> None:
        try:
            await self.responder.send_text(chat_id, text)
        except Exception as e:
            log.warning("Could not reply to %s: %s", chat_id, e)

    async def handle_event(self, event: InboundEvent) -> None:
        """Gate one inbound event and turn it into a queued request."""
        if not self.gate.accepts(event):
            return

        if event.kind is MessageKind.TEXT:
            if self.gate.is_echo(event, event.text):
                return
            command = event.text.strip().lower()
            if command == "/ping":
                await self._reply(event.chat_id, PING_REPLY)
                return
            if command == "/clear":
                self.history.clear(event.chat_id)
                await self._reply(event.chat_id, CLEARED_REPLY)
                return

        try:
            request = await self.media.normalize(event, self.supervisor.slot)
        except TranscriptionFailure as e:
            log.warning("Transcription error: %s", e)
            await self._reply(event.chat_id, VOICE_FAILED_MESSAGE)
            return
        if request is None:
            return
        self.dispatcher.submit(request)

    async def _intake(self) -> None:
        """Process inbound events one at a time, in arrival order."""
        while True:
            event = await self.inbox.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                log.error("Failed to handle message from %s: %s", event.chat_id, e,
                          exc_info=True)
            finally:
                self.inbox.task_done()

    # ─── Process Control ─────────────────────────────────────────

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop,
                           context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None:
            log.warning("Event loop: %s", context.get("message"))
            return
        if isinstance(exc, BENIGN_FAULTS):
            log.warning("Ignoring connection fault: %s", exc)
            return
        log.error("Unhandled error: %s", context.get("message"), exc_info=exc)
        self.exit_code = 1
        self._stop.set()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_stop():
            log.info("Shutting down gracefully")
            self._stop.set()

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_stop)
            loop.add_signal_handler(signal.SIGINT, handle_stop)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> int:
        """Main entry point; returns the process exit code."""
        cfg = self.config
        pid_path = cfg.state_dir / PID_FILE

        self._setup_logging()
        log.info("Starting agent...")

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        intake_task = None
        try:
            for warning in config_warnings(cfg):
                log.warning(warning)

            loop = asyncio.get_running_loop()
            loop.set_exception_handler(self._on_loop_exception)
            self._setup_signals(loop)

            supervisor_task = asyncio.create_task(self.supervisor.run())
            intake_task = asyncio.create_task(self._intake())
            stop_task = asyncio.create_task(self._stop.wait())
            log.info("Agent running (PID %d, transport %s)", os.getpid(), cfg.transport_type)

            await asyncio.wait({supervisor_task, stop_task},
                               return_when=asyncio.FIRST_COMPLETED)

            if supervisor_task.done():
                stop_task.cancel()
                exc = supervisor_task.exception()
                if exc is not None:
                    log.error("Connection supervisor failed: %s", exc, exc_info=exc)
                    self.exit_code = 1
                else:
                    # Transport ended on its own (e.g. stdin EOF): finish queued work
                    await self.inbox.join()
                    await self.dispatcher.wait_idle()
            else:
                supervisor_task.cancel()
                await asyncio.gather(supervisor_task, return_exceptions=True)

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            self.exit_code = 1
        finally:
            if intake_task is not None:
                intake_task.cancel()
                await asyncio.gather(intake_task, return_exceptions=True)
            await self.dispatcher.cancel()
            await self.supervisor.stop()
            try:
                await self.transport.shutdown()
            except Exception as e:
                log.debug("Transport shutdown failed: %s", e)
            _remove_pid_file(pid_path)
            log.info("Agent stopped")
        return self.exit_code


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="wabridge: a WhatsApp bridge to the claude CLI",
    )
    parser.add_argument(
        "-c", "--config",
        help="Optional TOML config file (environment variables override it)",
    )
    parser.add_argument(
        "--transport", choices=TRANSPORTS,
        help="Override WA_TRANSPORT (e.g., 'cli' for local testing)",
    )
    args = parser.parse_args()

    overrides = {}
    if args.transport:
        overrides["transport.type"] = args.transport

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = BridgeDaemon(config)
    try:
        code = asyncio.run(daemon.run())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
