"""Interactive session lifecycle against the fake sandbox."""

import asyncio
import os

import pytest

from crunner.config import InteractiveSettings, LimitSettings
from crunner.errors import InvalidInputError, SessionProtocolError
from crunner.models.interactive import (
    CodeMessage,
    CompileErrorMessage,
    ErrorMessage,
    ExitMessage,
    InputMessage,
    OutputMessage,
)
from crunner.sandbox import InteractiveSession, SessionState, WorkspaceManager
from crunner.sandbox.docker import TIMEOUT_EXIT_CODE

from crunner.tests.fakes import FakeSandbox, sandbox_settings

GREETER = "name = input('name? ')\nprint('hello ' + name)\n"
SLEEPER = "import time\nwhile True:\n    time.sleep(0.1)\n"


class Recorder:
    """Collects the messages a session sends to its client."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    def output(self) -> str:
        return "".join(m.data for m in self.messages if isinstance(m, OutputMessage))

    def of_type(self, cls):
        return [m for m in self.messages if isinstance(m, cls)]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_session(fake_sandbox, workspace_dir, recorder):
    def _make(**overrides):
        values = {"timeout_sec": 5.0, "supervisor_timeout_sec": 10.0}
        values.update(overrides)
        return InteractiveSession(
            fake_sandbox,
            WorkspaceManager(workspace_dir),
            LimitSettings(max_source_bytes=1024),
            InteractiveSettings(**values),
            recorder,
        )

    return _make


async def _wait_for_state(session, state, timeout=10.0):
    async def _poll():
        while session.state is not state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


class TestCompile:

    @pytest.mark.asyncio
    async def test_compile_error_closes_session(self, make_session, recorder, workspace_dir):
        session = make_session()

        await session.submit_code("#error nope\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        errors = recorder.of_type(CompileErrorMessage)
        assert len(errors) == 1
        assert "error: #error directive" in errors[0].data
        assert recorder.of_type(ExitMessage) == []
        assert session.state is SessionState.CLOSED
        assert session.outcome == "compile_error"
        assert os.listdir(workspace_dir) == []

    @pytest.mark.asyncio
    async def test_empty_code_is_rejected_without_workspace(self, make_session, workspace_dir):
        session = make_session()

        with pytest.raises(InvalidInputError):
            await session.submit_code("")

        assert session.state is SessionState.AWAITING_CODE
        assert session.workspace is None
        assert os.listdir(workspace_dir) == []

    @pytest.mark.asyncio
    async def test_oversized_code_is_rejected(self, make_session, workspace_dir):
        session = make_session()

        with pytest.raises(InvalidInputError) as exc_info:
            await session.submit_code("x" * 2048)

        assert exc_info.value.status_code == 413
        assert os.listdir(workspace_dir) == []


class TestRunning:

    @pytest.mark.asyncio
    async def test_output_then_exit(self, make_session, recorder):
        session = make_session()

        await session.handle(CodeMessage(type="code", code="print('hi')\n"))
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert "hi\n" in recorder.output()
        assert isinstance(recorder.messages[-1], ExitMessage)
        assert recorder.messages[-1].exit_code == 0
        assert recorder.messages[-1].timed_out is False
        assert session.outcome == "completed"

    @pytest.mark.asyncio
    async def test_input_is_forwarded(self, make_session, recorder):
        session = make_session()

        await session.submit_code(GREETER)
        await _wait_for_state(session, SessionState.RUNNING)
        await session.handle(InputMessage(type="stdin", data="bob\n"))
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert "hello bob\n" in recorder.output()
        assert recorder.messages[-1].exit_code == 0

    @pytest.mark.asyncio
    async def test_control_sequences_are_stripped(self, make_session, recorder):
        session = make_session()

        await session.submit_code("print('\\x1b[31mred\\x1b[0m')\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert recorder.output() == "red\n"

    @pytest.mark.asyncio
    async def test_control_sequences_kept_when_stripping_disabled(self, make_session, recorder):
        session = make_session(strip_ansi=False)

        await session.submit_code("print('\\x1b[31mred\\x1b[0m')\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert "\x1b[31mred" in recorder.output()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, make_session, recorder):
        session = make_session()

        await session.submit_code("import sys\nsys.exit(3)\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert recorder.messages[-1].exit_code == 3
        assert session.outcome == "runtime_error"

    @pytest.mark.asyncio
    async def test_supervisor_deadline(self, make_session, recorder, fake_sandbox, workspace_dir):
        session = make_session(timeout_sec=0.2, supervisor_timeout_sec=0.5)

        await session.submit_code(SLEEPER)
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        exit_message = recorder.messages[-1]
        assert isinstance(exit_message, ExitMessage)
        assert exit_message.exit_code == TIMEOUT_EXIT_CODE
        assert exit_message.timed_out is True
        assert session.outcome == "timeout"
        assert fake_sandbox.removed[-1].endswith("-tty")
        assert os.listdir(workspace_dir) == []


class TestProtocol:

    @pytest.mark.asyncio
    async def test_input_before_code_is_rejected(self, make_session):
        session = make_session()

        with pytest.raises(SessionProtocolError):
            await session.send_input("early\n")

        assert session.state is SessionState.AWAITING_CODE

    @pytest.mark.asyncio
    async def test_second_code_message_is_rejected(self, make_session, workspace_dir):
        session = make_session()
        await session.submit_code(SLEEPER)
        first_workspace = session.workspace

        with pytest.raises(SessionProtocolError):
            await session.submit_code("print('again')\n")

        assert session.workspace is first_workspace
        assert len(os.listdir(workspace_dir)) == 1
        await session.close()
        assert os.listdir(workspace_dir) == []


class TestClose:
    """Closing from any state releases everything."""

    @pytest.mark.asyncio
    async def test_close_while_running_kills_program(self, make_session, recorder, fake_sandbox, workspace_dir):
        session = make_session()
        await session.submit_code(SLEEPER)
        await _wait_for_state(session, SessionState.RUNNING)
        pid = session._terminal.pid

        await asyncio.wait_for(session.close(), timeout=10)

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        assert fake_sandbox.removed[-1].endswith("-tty")
        assert recorder.of_type(ExitMessage) == []
        assert session.outcome == "disconnected"
        assert os.listdir(workspace_dir) == []

    @pytest.mark.asyncio
    async def test_close_while_compiling(self, fake_sandbox, workspace_dir, make_session):
        session = make_session()
        await session.submit_code("#hang\n")
        for _ in range(100):
            if fake_sandbox.commands:
                break
            await asyncio.sleep(0.05)
        await asyncio.sleep(0.3)

        await asyncio.wait_for(session.close(), timeout=10)

        assert session.state is SessionState.CLOSED
        assert fake_sandbox.removed[-1].endswith("-build")
        assert os.listdir(workspace_dir) == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_session):
        session = make_session()

        await session.close()
        await session.close()

        assert session.state is SessionState.CLOSED
        await asyncio.wait_for(session.wait_closed(), timeout=1)

    @pytest.mark.asyncio
    async def test_code_after_close_is_rejected(self, make_session):
        session = make_session()
        await session.close()

        with pytest.raises(SessionProtocolError):
            await session.submit_code("print('late')\n")


class TestExitStatus:

    @pytest.mark.asyncio
    async def test_program_exit_124_is_not_a_timeout(self, make_session, recorder):
        session = make_session()

        await session.submit_code(f"import sys\nsys.exit({TIMEOUT_EXIT_CODE})\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        exit_message = recorder.messages[-1]
        assert isinstance(exit_message, ExitMessage)
        assert exit_message.exit_code == TIMEOUT_EXIT_CODE
        assert exit_message.timed_out is False
        assert session.outcome == "runtime_error"

    @pytest.mark.asyncio
    async def test_inner_deadline_exit_is_a_timeout(self, make_session, recorder):
        session = make_session(timeout_sec=0.3, supervisor_timeout_sec=5.0)

        await session.submit_code(f"import sys, time\ntime.sleep(0.5)\nsys.exit({TIMEOUT_EXIT_CODE})\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert recorder.messages[-1].timed_out is True
        assert session.outcome == "timeout"


class TestInputAfterExit:
    """Input racing the end of the program is refused, never crashes."""

    @pytest.mark.asyncio
    async def test_input_during_supervisor_kill(self, make_session, recorder, workspace_dir):
        session = make_session(timeout_sec=0.2, supervisor_timeout_sec=0.5)
        await session.submit_code(SLEEPER)
        await _wait_for_state(session, SessionState.RUNNING)

        for _ in range(1000):
            if session.state is SessionState.CLOSED:
                break
            try:
                await session.send_input("x\n")
            except SessionProtocolError:
                pass
            await asyncio.sleep(0.005)
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        exit_message = recorder.messages[-1]
        assert isinstance(exit_message, ExitMessage)
        assert exit_message.exit_code == TIMEOUT_EXIT_CODE
        assert exit_message.timed_out is True
        assert os.listdir(workspace_dir) == []

    @pytest.mark.asyncio
    async def test_input_after_program_exit_is_refused(self, make_session):
        session = make_session()
        await session.submit_code("print('bye')\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        with pytest.raises(SessionProtocolError):
            await session.send_input("late\n")


class TestUnexpectedFailure:

    @pytest.mark.asyncio
    async def test_internal_error_is_reported_to_client(self, workspace_dir, recorder):
        class BrokenTerminalSandbox(FakeSandbox):
            def interactive_command(self, workspace, name, timeout_sec):
                raise RuntimeError("boom")

        session = InteractiveSession(
            BrokenTerminalSandbox(sandbox_settings()),
            WorkspaceManager(workspace_dir),
            LimitSettings(),
            InteractiveSettings(timeout_sec=5.0, supervisor_timeout_sec=10.0),
            recorder,
        )

        await session.submit_code("print('never runs')\n")
        await asyncio.wait_for(session.wait_closed(), timeout=10)

        assert recorder.messages == [ErrorMessage(detail="Internal error")]
        assert session.state is SessionState.CLOSED
        assert os.listdir(workspace_dir) == []
