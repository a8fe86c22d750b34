"""Allowlist and loop-prevention gate for inbound events."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from channels import InboundEvent
from config import normalize_number

log = logging.getLogger(__name__)

# "15551234567:12@s.whatsapp.net" -> "15551234567@s.whatsapp.net"
_DEVICE_SUFFIX = re.compile(r":[^@]*@")


def normalize_sender(jid: str) -> str:
    """Strip the linked-device qualifier from a JID."""
    return _DEVICE_SUFFIX.sub("@", jid, count=1)


class AllowlistGate:
    def __init__(self, allowed: Iterable[str], self_chat: bool = False,
                 own_messages: Iterable[str] = ()):
        self.allowed = frozenset(normalize_sender(normalize_number(a)) for a in allowed)
        self.self_chat = self_chat
        self._own_messages = tuple(own_messages)

    def accepts(self, event: InboundEvent) -> bool:
        if not self.allowed:
            return False
        if normalize_sender(event.chat_id) not in self.allowed:
            log.debug("Ignoring message from non-allowed chat: %s", event.chat_id)
            return False
        if event.from_self and not self.self_chat:
            return False
        return True

    def is_echo(self, event: InboundEvent, text: str) -> bool:
        """True for our own error/fallback text coming back in self-chat."""
        if not event.from_self or not text:
            return False
        return text.startswith(self._own_messages)
