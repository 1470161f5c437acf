"""
Subprocess execution without shell interpretation.

Arguments are always passed as an argv list to asyncio's exec-based
spawner. Output is streamed line by line into a caller-supplied log sink
while the process runs, and a hard wall-clock timeout kills the process
together with everything it spawned: each command leads its own session and
the whole process group is killed.
"""

import asyncio
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger("sitebuilder.sandbox.runner")

LogCallback = Callable[[str, str], Awaitable[None]]

TIMEOUT_EXIT_CODE = -1
DEFAULT_TIMEOUT = 10 * 60
TAIL_LINES = 20
STREAM_LIMIT = 1024 * 1024
# Seconds to wait for output pipes to drain once the process group is dead
PIPE_GRACE = 5

# Git writes progress to stderr
GIT_PROGRESS = re.compile(
    r"^(Cloning into|Receiving objects|Resolving deltas|remote:|Updating files|warning:)",
    re.IGNORECASE,
)


@dataclass
class CommandResult:
    """Outcome of a streamed command."""

    success: bool
    exit_code: int
    tail: List[str] = field(default_factory=list)
    timed_out: bool = False


@dataclass
class CapturedOutput:
    """Outcome of a captured (non-streamed) command."""

    return_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.return_code == 0


def _stderr_level(line: str) -> str:
    return "warn" if GIT_PROGRESS.match(line.strip()) else "error"


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group the command leads."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Group already gone
        return


async def _settle(tasks: List[asyncio.Future]) -> None:
    """Wait briefly for helper tasks, cancel stragglers and retrieve every outcome."""
    _, pending = await asyncio.wait(tasks, timeout=PIPE_GRACE)
    for task in pending:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_command(
    executable: str,
    args: Sequence[str],
    *,
    on_log: LogCallback,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> CommandResult:
    """
    Run a command safely without shell interpretation.

    Args:
        executable: Program to start (resolved through PATH)
        args: Arguments, passed through untouched
        on_log: Async sink receiving (level, line) for every output line
        cwd: Working directory
        env: Extra environment variables layered over the process environment
        timeout: Seconds before the process is killed

    Returns:
        CommandResult; exit_code is -1 when the process was killed on
        timeout or could not be started
    """
    merged_env = {**os.environ, **(env or {})}
    tail: deque = deque(maxlen=TAIL_LINES)

    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
            start_new_session=True,
        )
    except OSError as e:
        await on_log("error", f"Command failed: {e}")
        return CommandResult(success=False, exit_code=TIMEOUT_EXIT_CODE, tail=[str(e)])

    async def pump(stream: asyncio.StreamReader, level_for: Callable[[str], str]) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            await on_log(level_for(line), line)

    waiter = asyncio.ensure_future(proc.wait())
    # Background children left behind by the command die with it
    waiter.add_done_callback(lambda _task: _kill_group(proc))
    pumps = [
        asyncio.ensure_future(pump(proc.stdout, lambda _line: "info")),
        asyncio.ensure_future(pump(proc.stderr, _stderr_level)),
    ]

    timed_out = False
    try:
        await asyncio.wait([waiter, *pumps], timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
        for task in pumps:
            if task.done() and not task.cancelled() and task.exception() is not None:
                raise task.exception()
        timed_out = not waiter.done()
    finally:
        # Covers timeout, task cancellation and sink failures alike
        _kill_group(proc)
        await _settle([waiter, *pumps])

    if timed_out:
        message = f"Command timed out after {timeout:g}s"
        tail.append(message)
        await on_log("error", message)
        return CommandResult(
            success=False, exit_code=TIMEOUT_EXIT_CODE, tail=list(tail), timed_out=True
        )

    return CommandResult(success=proc.returncode == 0, exit_code=proc.returncode, tail=list(tail))


async def capture_command(
    executable: str,
    args: Sequence[str],
    *,
    input_data: Optional[str] = None,
    timeout: float = 30,
) -> CapturedOutput:
    """
    Run a short command and capture its output.

    Used for control-plane calls (kubectl, docker rm) whose output is parsed
    rather than streamed to a deployment log.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Failed to start {executable}: {e}")
        return CapturedOutput(return_code=TIMEOUT_EXIT_CODE, stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input_data.encode() if input_data is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"{executable} {' '.join(args[:2])} timed out after {timeout:g}s")
        return CapturedOutput(return_code=TIMEOUT_EXIT_CODE, stderr="Command timed out")
    finally:
        _kill_group(proc)
        if proc.returncode is None:
            await proc.wait()

    return CapturedOutput(
        return_code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
