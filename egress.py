"""Outbound path: reply post-processing and delivery.

The backend marks generated files with [FILE:<path>] tags. Tags are stripped
from the text, the text goes out as a voice note or as chunked messages, and
each referenced file is sent as a document if it lies under a permitted root.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path

from errors import BridgeError, PathSecurityViolation
from lifecycle import SessionSlot
from speech import ElevenLabsSynthesizer

log = logging.getLogger(__name__)

FILE_TAG = re.compile(r"\[FILE:([^\]]+?)\]")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")

CHUNK_LIMIT = 4000

_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".html": "text/html",
    ".htm": "text/html",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".json": "application/json",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
}


def extract_file_refs(reply: str) -> tuple[str, list[str]]:
    """Split a reply into its visible text and the file paths it tags."""
    paths = [m.strip() for m in FILE_TAG.findall(reply) if m.strip()]
    clean = FILE_TAG.sub("", reply)
    clean = _EXCESS_NEWLINES.sub("\n\n", clean).strip()
    return clean, paths


def should_reply_with_voice(mode: str, was_voice: bool) -> bool:
    return mode == "always" or (mode == "auto" and was_voice)


def split_message(text: str, max_len: int = CHUNK_LIMIT) -> list[str]:
    """Split text into chunks of at most max_len, preferring newline breaks."""
    if len(text) <= max_len:
        return [text]
    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        cut = remaining.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.3:
            cut = max_len
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip()
    return chunks


def resolve_attachment(path: str | Path, roots: Iterable[str | Path]) -> Path:
    """Resolve a referenced file and confirm it sits under a permitted root."""
    resolved = Path(path).expanduser().resolve()
    target = str(resolved)
    for root in roots:
        prefix = str(Path(root).expanduser().resolve())
        if target == prefix or target.startswith(prefix.rstrip(os.sep) + os.sep):
            return resolved
    raise PathSecurityViolation(f"Path not allowed: {path}")


def guess_mime(path: Path) -> str:
    """Guess MIME type from file extension."""
    return _MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")


class Responder:
    """Delivers one backend reply to a chat over the current session."""

    def __init__(
        self,
        slot: SessionSlot,
        synthesizer: ElevenLabsSynthesizer | None,
        reply_mode: str = "auto",
        allowed_roots: Iterable[str | Path] = (),
        chunk_limit: int = CHUNK_LIMIT,
    ):
        self.slot = slot
        self.synthesizer = synthesizer
        self.reply_mode = reply_mode
        self.allowed_roots = [Path(r) for r in allowed_roots]
        self.chunk_limit = chunk_limit

    async def send_text(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.chunk_limit):
            await self.slot.current.send_text(chat_id, chunk)

    async def _send_voice(self, chat_id: str, text: str) -> bool:
        """Try a voice reply; False means the caller should send text."""
        try:
            ogg = await self.synthesizer.synthesize(text)
        except (BridgeError, OSError) as e:
            log.warning("Voice synthesis failed, falling back to text: %s", e)
            return False
        try:
            await self.slot.current.send_voice(chat_id, ogg)
            return True
        except Exception as e:
            log.warning("Voice send failed, falling back to text: %s", e)
            return False
        finally:
            ogg.unlink(missing_ok=True)

    async def _send_attachment(self, chat_id: str, ref: str) -> None:
        try:
            path = resolve_attachment(ref, self.allowed_roots)
        except PathSecurityViolation as e:
            log.warning("Refusing attachment: %s", e)
            return
        if not path.is_file():
            log.warning("Referenced file not found: %s", path)
            return
        try:
            await self.slot.current.send_document(chat_id, path, guess_mime(path), path.name)
            log.info("Sent file %s to %s", path.name, chat_id)
        except Exception as e:
            log.error("Failed to send file %s: %s", path, e)

    async def deliver(self, chat_id: str, reply: str, was_voice: bool = False) -> None:
        text, refs = extract_file_refs(reply)
        if text:
            voiced = False
            if (self.synthesizer is not None and self.synthesizer.configured
                    and should_reply_with_voice(self.reply_mode, was_voice)):
                voiced = await self._send_voice(chat_id, text)
            if not voiced:
                await self.send_text(chat_id, text)
        for ref in refs:
            await self._send_attachment(chat_id, ref)
