"""Suppression of transport diagnostic chatter.

The WhatsApp stack behind the gateway prints its Signal-protocol session
state (ratchets, pre-keys, MAC failures) through whatever sink it can reach.
Those lines carry key material fragments and drown the useful log, so every
record and every raw terminal write is checked against a denylist first.
"""

from __future__ import annotations

import json
import logging
from typing import Any, TextIO

NOISE_MARKERS: tuple[str, ...] = (
    "Closing session",
    "SessionEntry",
    "Decrypted message",
    "Bad MAC",
    "Failed to decrypt",
    "Session error",
    "Closing open session",
    "pendingPreKey",
    "registrationId",
    "ephemeralKeyPair",
    "_chains",
    "chainKey",
    "rootKey",
    "baseKey",
    "indexInfo",
    "currentRatchet",
)

# Structured args are only inspected up to this many characters
_ARG_PREVIEW = 200


def is_noise(text: str | None) -> bool:
    if not text:
        return False
    return any(marker in text for marker in NOISE_MARKERS)


def _preview(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    try:
        return json.dumps(arg, default=str)[:_ARG_PREVIEW]
    except (TypeError, ValueError):
        return repr(arg)[:_ARG_PREVIEW]


class NoiseFilter(logging.Filter):
    """Drop log records whose message or arguments match the denylist."""

    def filter(self, record: logging.LogRecord) -> bool:
        if is_noise(str(record.msg)):
            return False
        args = record.args
        if isinstance(args, dict):
            args = (args,)
        if args and any(is_noise(_preview(a)) for a in args):
            return False
        return True


def write_clean(stream: TextIO, text: str) -> bool:
    """Write text to a raw output stream unless it is transport noise.

    Returns True when the text was written.
    """
    if is_noise(text):
        return False
    stream.write(text)
    stream.flush()
    return True
