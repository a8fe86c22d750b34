"""Per-chat conversation history: one JSON file per chat, capped FIFO."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from errors import PersistenceCorruption

log = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9@._-]")


def sanitize_chat_id(chat_id: str) -> str:
    """Make a chat id safe to use as a file name."""
    return _UNSAFE_CHARS.sub("_", chat_id)


@dataclass(frozen=True)
class HistoryEntry:
    user_text: str
    assistant_reply: str
    from_self: bool = False
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, d: dict) -> HistoryEntry:
        if not isinstance(d, dict):
            raise PersistenceCorruption(f"entry is {type(d).__name__}, not an object")
        try:
            return cls(
                user_text=str(d["user_text"]),
                assistant_reply=str(d.get("assistant_reply", "")),
                from_self=bool(d.get("from_self", False)),
                timestamp=float(d.get("timestamp", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceCorruption(f"malformed entry: {e}") from e


def _atomic_write(path: Path, data: str) -> None:
    """Write to temp file then rename (atomic on POSIX)."""
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.rename(path)


class HistoryStore:
    def __init__(self, history_dir: Path, max_entries: int = 20):
        self.dir = Path(history_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.max_entries = max_entries

    def path_for(self, chat_id: str) -> Path:
        return self.dir / f"{sanitize_chat_id(chat_id)}.json"

    def _read(self, path: Path) -> list[HistoryEntry]:
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceCorruption(str(e)) from e
        if not isinstance(raw, list):
            raise PersistenceCorruption("history file is not a list")
        return [HistoryEntry.from_dict(d) for d in raw]

    def load(self, chat_id: str) -> list[HistoryEntry]:
        """Return the chat's history, or [] if missing or corrupt."""
        path = self.path_for(chat_id)
        if not path.exists():
            return []
        try:
            return self._read(path)
        except PersistenceCorruption as e:
            log.warning("Corrupt history for %s, starting fresh: %s", chat_id, e)
            return []

    def save(self, chat_id: str, entries: list[HistoryEntry]) -> list[HistoryEntry]:
        """Persist the most recent max_entries entries, replacing the file."""
        kept = entries[-self.max_entries:] if self.max_entries > 0 else []
        _atomic_write(
            self.path_for(chat_id),
            json.dumps([asdict(e) for e in kept], ensure_ascii=False, indent=2),
        )
        return kept

    def append(self, chat_id: str, entry: HistoryEntry) -> list[HistoryEntry]:
        return self.save(chat_id, self.load(chat_id) + [entry])

    def clear(self, chat_id: str) -> None:
        self.save(chat_id, [])
