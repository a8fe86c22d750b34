"""Sequential request queue.

Requests from every chat share one FIFO. Only one request is with the AI
backend at a time, so replies go out in arrival order and the backend never
sees two prompts at once.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from backend import ClaudeBackend
from egress import Responder
from errors import SubprocessTimeout
from history import HistoryEntry, HistoryStore

log = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Response timed out. Try a shorter or more specific message."
ERROR_MESSAGE = "Error processing your message. Please try again."


@dataclass
class NormalizedRequest:
    chat_id: str
    prompt_text: str
    from_self: bool = False
    was_voice: bool = False
    cleanup_paths: list[Path] = field(default_factory=list)


def remove_paths(paths: Iterable[Path]) -> None:
    """Delete files and directories; failures are logged and ignored."""
    for p in paths:
        p = Path(p)
        try:
            if p.is_dir():
                shutil.rmtree(p)
            else:
                p.unlink(missing_ok=True)
        except OSError as e:
            log.debug("Cleanup of %s failed: %s", p, e)


class Dispatcher:
    def __init__(self, backend: ClaudeBackend, history: HistoryStore, responder: Responder):
        self.backend = backend
        self.history = history
        self.responder = responder
        self._queue: deque[NormalizedRequest] = deque()
        self._processing = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._processing

    def submit(self, request: NormalizedRequest) -> None:
        """Queue a request and make sure a drain is running."""
        self._queue.append(request)
        task = asyncio.create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        if self._processing:
            return
        self._processing = True
        try:
            while self._queue:
                await self._process(self._queue.popleft())
        finally:
            self._processing = False

    async def wait_idle(self) -> None:
        """Wait for every scheduled drain to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        """Abandon queued requests and cancel the one in flight."""
        for req in self._queue:
            remove_paths(req.cleanup_paths)
        self._queue.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _presence(self, chat_id: str, presence: str) -> None:
        try:
            await self.responder.slot.current.send_presence(chat_id, presence)
        except Exception as e:
            log.debug("Presence update failed (non-critical): %s", e)

    async def _notify(self, chat_id: str, text: str) -> None:
        try:
            await self.responder.slot.current.send_text(chat_id, text)
        except Exception as e:
            log.warning("Could not deliver failure notice to %s: %s", chat_id, e)

    async def _process(self, req: NormalizedRequest) -> None:
        try:
            await self._presence(req.chat_id, "composing")
            log.info("Processing: %s...", req.prompt_text[:80])

            entries = self.history.load(req.chat_id)
            start = time.time()
            reply = await self.backend.ask(req.prompt_text, entries)

            await self._presence(req.chat_id, "paused")
            await self.responder.deliver(req.chat_id, reply, was_voice=req.was_voice)

            # Media files are done once delivered; the finally below sees an empty list
            paths, req.cleanup_paths = req.cleanup_paths, []
            remove_paths(paths)

            self.history.append(req.chat_id, HistoryEntry(
                user_text=req.prompt_text,
                assistant_reply=reply,
                from_self=req.from_self,
            ))
            log.info("Response sent (%d chars, %.1fs)", len(reply), time.time() - start)
        except SubprocessTimeout as e:
            log.error("Request for %s timed out: %s", req.chat_id, e)
            await self._presence(req.chat_id, "paused")
            await self._notify(req.chat_id, TIMEOUT_MESSAGE)
        except Exception as e:
            log.error("Request for %s failed: %s", req.chat_id, e, exc_info=True)
            await self._presence(req.chat_id, "paused")
            await self._notify(req.chat_id, ERROR_MESSAGE)
        finally:
            remove_paths(req.cleanup_paths)
