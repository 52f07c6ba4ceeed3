"""Batch orchestration: validate, allocate, build, execute, clean up."""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum

from crunner.config import LimitSettings
from crunner.errors import InvalidInputError, PayloadTooLargeError
from crunner.sandbox.docker import DockerSandbox
from crunner.sandbox.stages import compile_source, execute_program
from crunner.sandbox.workspace import WorkspaceManager

_logger = logging.getLogger("crunner.pipeline")


class ExecutionMode(str, Enum):
    BATCH = "batch"
    INTERACTIVE = "interactive"


@dataclass
class ExecutionRequest:
    source_code: str
    supplied_input: str = ""
    mode: ExecutionMode = ExecutionMode.BATCH


@dataclass
class RunResult:
    """Outcome of one batch request.

    Either `compile_error` is non-empty, or the run fields are populated,
    never both.
    """

    run_id: str
    stdout: str = ""
    stderr: str = ""
    compile_error: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def outcome(self) -> str:
        if self.compile_error:
            return "compile_error"
        if self.timed_out:
            return "timeout"
        return "completed" if self.exit_code == 0 else "runtime_error"


def code_hash(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()[:16]


def validate_source(code: str, limits: LimitSettings) -> None:
    """Reject empty or oversized source before anything is allocated."""
    if not isinstance(code, str) or not code.strip():
        raise InvalidInputError(detail="No source code provided")
    size = len(code.encode("utf-8"))
    if size > limits.max_source_bytes:
        raise PayloadTooLargeError(
            detail=f"Source code too large (max {limits.max_source_bytes} bytes)",
            size=size,
            limit=limits.max_source_bytes,
        )


def validate_request(request: ExecutionRequest, limits: LimitSettings) -> None:
    validate_source(request.source_code, limits)
    size = len(request.supplied_input.encode("utf-8"))
    if size > limits.max_input_bytes:
        raise PayloadTooLargeError(
            detail=f"Input too large (max {limits.max_input_bytes} bytes)",
            size=size,
            limit=limits.max_input_bytes,
        )


class CodeRunner:
    """Runs batch requests, one exclusively owned workspace per request."""

    def __init__(self, sandbox: DockerSandbox, workspaces: WorkspaceManager, limits: LimitSettings) -> None:
        self.sandbox = sandbox
        self.workspaces = workspaces
        self.limits = limits

    async def run(self, request: ExecutionRequest) -> RunResult:
        """Compile and, if that succeeds, execute one request.

        Build and execution run strictly in sequence; a failed build is
        returned without starting the program. The workspace is removed on
        every exit path, including cancellation.

        Raises:
            InvalidInputError: Bad mode, empty or oversized payload.
            WorkspaceError: The workspace could not be created or written.
            IsolationError: The docker CLI could not be started.
        """
        if request.mode is not ExecutionMode.BATCH:
            raise InvalidInputError(detail="Interactive mode is only available over the /ws/run channel")
        validate_request(request, self.limits)

        run_id = uuid.uuid4().hex
        start = time.monotonic()
        _logger.info("run.start id=%s code_hash=%s", run_id, code_hash(request.source_code))
        with self.workspaces.open(run_id) as workspace:
            workspace.write_source(request.source_code)
            workspace.write_input(request.supplied_input)

            build = await compile_source(self.sandbox, workspace)
            if not build.succeeded:
                result = RunResult(run_id=run_id, compile_error=build.diagnostics)
            else:
                outcome = await execute_program(self.sandbox, workspace)
                result = RunResult(
                    run_id=run_id,
                    stdout=outcome.stdout,
                    stderr=outcome.stderr,
                    exit_code=outcome.exit_code,
                    timed_out=outcome.timed_out,
                )
        result.duration_ms = int((time.monotonic() - start) * 1000)
        _logger.info(
            "run.finish id=%s outcome=%s exit=%s timed_out=%s dur_ms=%s",
            run_id, result.outcome, result.exit_code, result.timed_out, result.duration_ms,
        )
        return result
