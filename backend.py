"""AI backend: the claude CLI run once per request in print mode.

The whole prompt (system prompt, file-generation instructions, recent
history, current message) goes over stdin; stdout is the reply.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from errors import BackendError
from history import HistoryEntry
from runner import run_command

log = logging.getLogger(__name__)

# Prompt shaping limits
HISTORY_WINDOW = 10
TRUNCATE_AT = 500


def _truncate(text: str, limit: int = TRUNCATE_AT) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class ClaudeBackend:
    def __init__(
        self,
        executable: str,
        project_dir: Path,
        system_prompt: str,
        files_dir: Path,
        chrome_path: str,
        timeout: float = 300,
        model: str = "sonnet",
        max_turns: int = 25,
    ):
        self.executable = executable
        self.project_dir = Path(project_dir)
        self.system_prompt = system_prompt
        self.files_dir = Path(files_dir)
        self.chrome_path = chrome_path
        self.timeout = timeout
        self.model = model
        self.max_turns = max_turns

    def build_args(self) -> list[str]:
        args = [self.executable, "-p", "--dangerously-skip-permissions",
                "--max-turns", str(self.max_turns)]
        if self.model:
            args += ["--model", self.model]
        return args

    def build_prompt(self, message: str, history: list[HistoryEntry]) -> str:
        files = self.files_dir
        lines = [
            self.system_prompt,
            "",
            "If asked to create a file (PDF, proposal, quote, etc.):",
            f"1. Create a professional HTML file in {files}/",
            f'2. Convert to PDF: "{self.chrome_path}" --headless --disable-gpu '
            f"--print-to-pdf={files}/name.pdf --no-pdf-header-footer {files}/name.html",
            f"3. Include the path at the end: [FILE:{files}/name.pdf]",
            "4. The file will be sent automatically via WhatsApp.",
            "",
        ]
        if history:
            lines.append("Recent conversation history:")
            for entry in history[-HISTORY_WINDOW:]:
                lines.append(f"User: {_truncate(entry.user_text)}")
                if entry.assistant_reply:
                    lines.append(f"Assistant: {_truncate(entry.assistant_reply)}")
            lines.append("")
        lines.append(f"Current message: {message}")
        lines.append("")
        lines.append("Respond:")
        return "\n".join(lines)

    def _env(self) -> dict[str, str]:
        # Blank the nesting marker so the CLI runs when the daemon itself
        # was started from inside a claude session
        env = dict(os.environ)
        env["CLAUDECODE"] = ""
        return env

    async def ask(self, message: str, history: list[HistoryEntry]) -> str:
        """Return the trimmed reply. Raises SubprocessTimeout or BackendError."""
        prompt = self.build_prompt(message, history)
        log.debug("Backend prompt: %d chars, %d history entries", len(prompt), len(history))
        try:
            result = await run_command(
                self.build_args(), self.timeout, input_text=prompt,
                cwd=self.project_dir, env=self._env(),
            )
        except OSError as e:
            raise BackendError(f"could not start {self.executable}: {e}") from e
        if result.returncode != 0:
            raise BackendError(f"claude exit {result.returncode}: {result.stderr[:500]}")
        return result.stdout.strip()
