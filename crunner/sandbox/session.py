"""Interactive session: compile on the first message, then bridge a terminal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum

from crunner.config import InteractiveSettings, LimitSettings
from crunner.errors import APIError, IsolationError, SessionProtocolError
from crunner.models.interactive import (
    ClientMessage,
    CodeMessage,
    CompileErrorMessage,
    ErrorMessage,
    ExitMessage,
    InputMessage,
    OutputMessage,
    ServerMessage,
)
from crunner.sandbox.docker import TIMEOUT_EXIT_CODE, DockerSandbox, container_name, inner_deadline_fired
from crunner.sandbox.pipeline import code_hash, validate_source
from crunner.sandbox.stages import compile_source
from crunner.sandbox.terminal import TerminalProcess, TerminalSanitizer
from crunner.sandbox.workspace import Workspace, WorkspaceManager

_logger = logging.getLogger("crunner.session")

Send = Callable[[ServerMessage], Awaitable[None]]


class SessionState(str, Enum):
    AWAITING_CODE = "awaiting_code"
    COMPILING = "compiling"
    RUNNING = "running"
    CLOSED = "closed"


class InteractiveSession:
    """One live connection's program, owned exclusively by the session.

    States move strictly forward: awaiting_code -> compiling -> running ->
    closed, with compiling -> closed on a failed build. `close` may be
    called from any state and is idempotent; it kills the live process,
    removes its container and destroys the workspace.
    """

    def __init__(
        self,
        sandbox: DockerSandbox,
        workspaces: WorkspaceManager,
        limits: LimitSettings,
        settings: InteractiveSettings,
        send: Send,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.state = SessionState.AWAITING_CODE
        self.workspace: Workspace | None = None
        self.exit_code: int | None = None
        self.timed_out = False
        self.code_hash: str | None = None
        self.compile_failed = False
        self.started_at = time.monotonic()
        self._sandbox = sandbox
        self._workspaces = workspaces
        self._limits = limits
        self._settings = settings
        self._send = send
        self._terminal: TerminalProcess | None = None
        # Cleared as soon as the program stops reading, before it is reaped
        self._accepting_input = False
        self._task: asyncio.Task | None = None
        self._closed = asyncio.Event()

    @property
    def outcome(self) -> str:
        if self.compile_failed:
            return "compile_error"
        if self.exit_code is None:
            return "disconnected"
        if self.timed_out:
            return "timeout"
        return "completed" if self.exit_code == 0 else "runtime_error"

    async def handle(self, message: ClientMessage) -> None:
        """Apply one client message.

        Raises:
            SessionProtocolError: The message is not valid in the current state.
            InvalidInputError: The submitted source is empty or oversized.
        """
        if isinstance(message, CodeMessage):
            await self.submit_code(message.code)
        elif isinstance(message, InputMessage):
            await self.send_input(message.data)

    async def submit_code(self, code: str) -> None:
        if self.state is not SessionState.AWAITING_CODE:
            raise SessionProtocolError(detail="Code has already been submitted for this session")
        validate_source(code, self._limits)
        self.code_hash = code_hash(code)
        self.workspace = self._workspaces.allocate(self.id)
        self.workspace.write_source(code)
        self.state = SessionState.COMPILING
        _logger.info("session.compile id=%s code_hash=%s", self.id, self.code_hash)
        self._task = asyncio.create_task(self._run(), name=f"session-{self.id}")

    async def send_input(self, data: str) -> None:
        if self.state is not SessionState.RUNNING or not self._accepting_input:
            raise SessionProtocolError(detail="Input is only accepted while the program is running")
        try:
            await self._terminal.write(data.encode("utf-8"))
        except OSError as exc:
            self._accepting_input = False
            raise SessionProtocolError(detail="The program is no longer accepting input") from exc

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _run(self) -> None:
        try:
            build = await compile_source(self._sandbox, self.workspace)
            if not build.succeeded:
                self.compile_failed = True
                await self._send(CompileErrorMessage(data=build.diagnostics))
                return
            await self._start_program()
            self.state = SessionState.RUNNING
            await self._stream()
            await self._send(ExitMessage(exit_code=self.exit_code, timed_out=self.timed_out))
        except APIError as e:
            _logger.warning("session.error id=%s err=%s", self.id, e.detail)
            await self._send(ErrorMessage(detail=e.detail))
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.exception("session.failed id=%s", self.id)
            await self._send(ErrorMessage(detail="Internal error"))
        finally:
            await self.close()

    async def _start_program(self) -> None:
        argv = self._sandbox.interactive_command(
            self.workspace, container_name(self.workspace, "tty"), self._settings.timeout_sec
        )
        try:
            self._terminal = await TerminalProcess.spawn(argv, cols=self._settings.cols, rows=self._settings.rows)
        except OSError as exc:
            raise IsolationError(detail=f"Failed to start {argv[0]}: {exc.strerror or exc}") from exc
        self._accepting_input = True
        _logger.info("session.running id=%s pid=%s", self.id, self._terminal.pid)

    async def _stream(self) -> None:
        sanitizer = TerminalSanitizer(strip=self._settings.strip_ansi)
        supervisor_kill = False
        started = time.monotonic()
        try:
            await asyncio.wait_for(self._pump(sanitizer), timeout=self._settings.supervisor_timeout_sec)
        except asyncio.TimeoutError:
            supervisor_kill = True
            _logger.info("session.deadline id=%s", self.id)
            await self._kill_program()
        self._accepting_input = False
        tail = sanitizer.flush()
        if tail:
            await self._send(OutputMessage(data=tail))
        returncode = await self._terminal.wait()
        self.timed_out = supervisor_kill or inner_deadline_fired(
            returncode, time.monotonic() - started, self._settings.timeout_sec
        )
        self.exit_code = TIMEOUT_EXIT_CODE if self.timed_out else returncode

    async def _pump(self, sanitizer: TerminalSanitizer) -> None:
        while chunk := await self._terminal.read():
            text = sanitizer.feed(chunk)
            if text:
                await self._send(OutputMessage(data=text))

    async def _kill_program(self) -> None:
        if self._terminal is None:
            return
        self._accepting_input = False
        await self._terminal.terminate()
        await self._sandbox.remove(container_name(self.workspace, "tty"))

    async def close(self) -> None:
        """Terminate any live process and release the workspace."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._terminal is not None:
            if self._terminal.returncode is None:
                await self._kill_program()
            else:
                self._terminal.close()
        if self.workspace is not None:
            self.workspace.destroy()
        self._closed.set()
        _logger.info(
            "session.close id=%s outcome=%s exit=%s dur_ms=%s",
            self.id, self.outcome, self.exit_code, int((time.monotonic() - self.started_at) * 1000),
        )
