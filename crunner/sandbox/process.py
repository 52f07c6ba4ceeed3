"""Supervised execution of an isolation-layer command with separate pipes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from crunner.errors import IsolationError, WorkspaceError

_logger = logging.getLogger("crunner.sandbox")

_READ_CHUNK = 64 * 1024
# Bound on waiting for pipes to reach EOF after a kill
_DRAIN_GRACE_SEC = 5


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int
    timed_out: bool
    duration_ms: int


class _CappedBuffer:
    """Keeps the first `limit` bytes of a stream and counts the rest."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        room = self._limit - len(self._data)
        if room > 0:
            self._data += chunk[:room]
        self.dropped += max(0, len(chunk) - max(room, 0))

    def text(self) -> str:
        text = self._data.decode("utf-8", errors="replace")
        if self.dropped:
            text += f"\n... [output truncated, {self.dropped} bytes omitted]"
        return text


async def _drain(stream: asyncio.StreamReader, buffer: _CappedBuffer) -> None:
    while chunk := await stream.read(_READ_CHUNK):
        buffer.feed(chunk)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


async def run_supervised(
    argv: Sequence[str],
    *,
    timeout: float,
    max_output_bytes: int,
    stdin_path: Path | None = None,
    on_abort: Callable[[], Awaitable[None]] | None = None,
) -> ProcessResult:
    """Run `argv` with stdout and stderr on separate pipes under a hard deadline.

    The output streams are drained concurrently while the process runs, so a
    chatty program can neither block on a full pipe nor lose what it wrote
    before a kill. When the deadline passes, or the awaiting task is
    cancelled, the process is killed and `on_abort` is awaited to tear down
    anything the process left behind (e.g. its container).

    Raises:
        WorkspaceError: If `stdin_path` cannot be opened.
        IsolationError: If the command cannot be started at all.
    """
    start = time.monotonic()
    try:
        stdin = open(stdin_path, "rb") if stdin_path is not None else None
    except OSError as exc:
        raise WorkspaceError(detail=f"Failed to open {Path(stdin_path).name}") from exc
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=stdin if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise IsolationError(detail=f"Failed to start {argv[0]}: {exc.strerror or exc}") from exc
    finally:
        if stdin is not None:
            stdin.close()

    out, err = _CappedBuffer(max_output_bytes), _CappedBuffer(max_output_bytes)
    drains = [
        asyncio.create_task(_drain(proc.stdout, out)),
        asyncio.create_task(_drain(proc.stderr, err)),
    ]
    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        _logger.info("process.deadline pid=%s timeout=%ss", proc.pid, timeout)
        await _kill(proc)
        if on_abort is not None:
            await on_abort()
    except asyncio.CancelledError:
        _logger.info("process.cancelled pid=%s", proc.pid)
        await _kill(proc)
        for task in drains:
            task.cancel()
        if on_abort is not None:
            await on_abort()
        raise

    _, pending = await asyncio.wait(drains, timeout=_DRAIN_GRACE_SEC)
    for task in pending:
        task.cancel()

    return ProcessResult(
        stdout=out.text(),
        stderr=err.text(),
        returncode=proc.returncode,
        timed_out=timed_out,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
