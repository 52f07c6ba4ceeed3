"""Compile-and-run engine for untrusted C source in docker containers."""

from crunner.sandbox.docker import TIMEOUT_EXIT_CODE, DockerSandbox
from crunner.sandbox.pipeline import (
    CodeRunner,
    ExecutionMode,
    ExecutionRequest,
    RunResult,
    validate_request,
    validate_source,
)
from crunner.sandbox.session import InteractiveSession, SessionState
from crunner.sandbox.stages import BuildResult, ExecutionOutcome, compile_source, execute_program
from crunner.sandbox.workspace import Workspace, WorkspaceManager

__all__ = [
    "TIMEOUT_EXIT_CODE",
    "BuildResult",
    "CodeRunner",
    "DockerSandbox",
    "ExecutionMode",
    "ExecutionOutcome",
    "ExecutionRequest",
    "InteractiveSession",
    "RunResult",
    "SessionState",
    "Workspace",
    "WorkspaceManager",
    "compile_source",
    "execute_program",
    "validate_request",
    "validate_source",
]
