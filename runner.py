"""Bounded subprocess execution for external tools (ffmpeg, whisper, claude)."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path

from errors import SubprocessTimeout, ToolError

log = logging.getLogger(__name__)


@dataclass
class ProcResult:
    returncode: int
    stdout: str
    stderr: str


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the whole process group, falling back to the single process."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
        await proc.wait()
    except Exception:
        try:
            proc.kill()
            await proc.wait()
        except Exception as e:
            log.debug("Kill after timeout failed for pid %s: %s", proc.pid, e)


async def run_command(
    args: list[str],
    timeout: float,
    input_text: str | None = None,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
) -> ProcResult:
    """Run a program to completion and capture its output.

    Raises SubprocessTimeout when the bound is exceeded (the process group is
    killed first). Spawn failures propagate as OSError.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=env,
        start_new_session=True,
    )
    data = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(data), timeout=timeout)
    except TimeoutError:
        await _kill(proc)
        raise SubprocessTimeout(Path(args[0]).name, timeout) from None
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    return ProcResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )


async def run_checked(args: list[str], timeout: float, **kwargs) -> ProcResult:
    """Like run_command, but a non-zero exit raises ToolError."""
    result = await run_command(args, timeout, **kwargs)
    if result.returncode != 0:
        name = Path(args[0]).name
        raise ToolError(f"{name} exit {result.returncode}: {result.stderr[-500:].strip()}")
    return result
