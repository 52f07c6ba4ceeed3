"""Pseudo-terminal attachment and terminal control-sequence filtering."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import errno
import fcntl
import logging
import os
import re
import signal
import struct
import termios
from collections.abc import Sequence

_logger = logging.getLogger("crunner.terminal")

# Complete sequences, longest forms first
_SEQUENCE = re.compile(
    r"""
      \x1b\[[0-?]*[ -/]*[@-~]                 # CSI: cursor movement, colors, erase
    | \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)       # OSC: window titles, ended by BEL or ST
    | \x1b[PX^_](?:[^\x1b]|\x1b(?!\\))*\x1b\\ # DCS, SOS, PM, APC strings
    | \x1b[()*+-./].                          # charset designation
    | \x1b[ -~]                               # two-byte escapes (ESC 7, ESC =, ...)
    """,
    re.VERBOSE | re.DOTALL,
)

# A sequence cut off at the end of a chunk
_PARTIAL = re.compile(
    r"""
    \x1b(?:
        \[[0-?]*[ -/]*
      | \][^\x07\x1b]*\x1b?
      | [PX^_](?:[^\x1b]|\x1b(?!\\))*\x1b?
      | [()*+-./]
    )?\Z
    """,
    re.VERBOSE | re.DOTALL,
)

# Bare C0 controls and DEL, except tab, newline and carriage return
_CONTROL = re.compile(r"[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]")

# Longest tail held back waiting for the rest of a sequence
_MAX_PENDING = 4096


class TerminalSanitizer:
    """Incrementally decodes terminal output and strips control sequences.

    Chunks from a pty can split both multi-byte UTF-8 characters and
    escape sequences; incomplete tails are held until the next `feed` or
    the final `flush`.
    """

    def __init__(self, strip: bool = True) -> None:
        self._strip = strip
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> str:
        text = self._pending + self._decoder.decode(chunk)
        self._pending = ""
        if not self._strip:
            return text
        cut = self._incomplete_tail(text)
        if cut is not None:
            text, self._pending = text[:cut], text[cut:]
        return self._clean(text)

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return self._clean(text) if self._strip else text

    def _incomplete_tail(self, text: str) -> int | None:
        m = _PARTIAL.search(text)
        if m and len(text) - m.start() <= _MAX_PENDING:
            return m.start()
        if text.endswith("\r"):
            return len(text) - 1
        return None

    @staticmethod
    def _clean(text: str) -> str:
        text = _SEQUENCE.sub("", text)
        text = text.replace("\r\n", "\n")
        return _CONTROL.sub("", text)


def strip_ansi_sequences(raw: str) -> str:
    """Strip terminal control sequences from a complete string."""
    return TerminalSanitizer._clean(raw)


class TerminalProcess:
    """A child process whose stdin, stdout and stderr are a pseudo-terminal.

    Use `spawn` to start one. Output is read from the master side as raw
    bytes; `read` returns b"" once the child has closed the terminal.
    """

    def __init__(self, proc: asyncio.subprocess.Process, master_fd: int) -> None:
        self._proc = proc
        self._fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._loop.add_reader(self._fd, self._on_readable)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @classmethod
    async def spawn(cls, argv: Sequence[str], *, cols: int = 80, rows: int = 30) -> "TerminalProcess":
        """Start `argv` attached to a fresh pseudo-terminal of the given size.

        Raises:
            OSError: If the terminal cannot be opened or the command cannot start.
        """
        master_fd, slave_fd = os.openpty()
        try:
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
            env = dict(os.environ, TERM="xterm-color", COLUMNS=str(cols), LINES=str(rows))
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        os.set_blocking(master_fd, False)
        _logger.debug("terminal.spawn pid=%s argv0=%s", proc.pid, argv[0])
        return cls(proc, master_fd)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, 4096)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave descriptor is closed
            data = b""
        if not data:
            self._stop_reading()
        self._queue.put_nowait(data)

    def _stop_reading(self) -> None:
        if not self._eof:
            self._eof = True
            self._loop.remove_reader(self._fd)

    async def read(self) -> bytes:
        """Next chunk of terminal output; b"" at end of stream."""
        if self._eof and self._queue.empty():
            return b""
        return await self._queue.get()

    async def write(self, data: bytes) -> None:
        """Write to the terminal's input side.

        Raises:
            BrokenPipeError: If the terminal has already been closed.
            OSError: If the child has gone away mid-write.
        """
        view = memoryview(data)
        while view:
            if self._fd < 0:
                raise BrokenPipeError(errno.EPIPE, "terminal is closed")
            try:
                written = os.write(self._fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    async def wait(self) -> int:
        return await self._proc.wait()

    async def terminate(self) -> None:
        """Kill the child's process group and release the terminal."""
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self._proc.pid, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._proc.wait()
        self.close()

    def close(self) -> None:
        if self._fd < 0:
            return
        self._stop_reading()
        self._queue.put_nowait(b"")
        os.close(self._fd)
        self._fd = -1
