"""Error taxonomy shared across the bridge.

Each class marks one failure category so callers can choose the user-facing
reaction (drop, degrade, or report) without parsing messages.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge failures."""


class SubprocessTimeout(BridgeError):
    """An external tool exceeded its time bound."""

    def __init__(self, program: str, timeout: float):
        super().__init__(f"{program} timed out after {timeout:g}s")
        self.program = program
        self.timeout = timeout


class ToolError(BridgeError):
    """An external tool exited with a non-zero status."""


class BackendError(BridgeError):
    """The AI backend subprocess failed."""


class TranscriptionFailure(BridgeError):
    """A voice note could not be turned into text."""


class MediaDownloadFailure(BridgeError):
    """Image or video payload could not be retrieved."""


class SpeechSynthesisError(BridgeError):
    """Text-to-speech request or transcoding failed."""


class PathSecurityViolation(BridgeError):
    """A file reference resolves outside the permitted roots."""


class PersistenceCorruption(BridgeError):
    """A history file is unreadable or has the wrong shape."""
