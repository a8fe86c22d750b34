"""Speech-to-text through the openai-whisper command-line tool."""

from __future__ import annotations

import logging
from pathlib import Path

from runner import run_checked

log = logging.getLogger(__name__)


class WhisperTranscriber:
    def __init__(self, executable: str = "whisper", model: str = "base",
                 timeout: float = 60):
        self.executable = executable
        self.model = model
        self.timeout = timeout

    def transcript_path(self, audio_path: Path) -> Path:
        """Where whisper writes the text for an input file."""
        return audio_path.with_suffix(".txt")

    async def transcribe(self, audio_path: Path) -> str:
        """Transcribe a 16 kHz mono WAV file; returns "" if nothing was heard.

        The transcript file is removed before returning.
        """
        out_dir = audio_path.parent
        txt_path = self.transcript_path(audio_path)
        try:
            await run_checked(
                [self.executable, str(audio_path), "--model", self.model,
                 "--output_format", "txt", "--output_dir", str(out_dir)],
                timeout=self.timeout,
            )
            if not txt_path.exists():
                log.warning("whisper produced no transcript for %s", audio_path.name)
                return ""
            return txt_path.read_text(encoding="utf-8").strip()
        finally:
            txt_path.unlink(missing_ok=True)
