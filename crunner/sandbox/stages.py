"""Build and execution stages run against a workspace."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from crunner.sandbox.docker import TIMEOUT_EXIT_CODE, DockerSandbox, container_name, inner_deadline_fired
from crunner.sandbox.process import run_supervised
from crunner.sandbox.workspace import Workspace

_logger = logging.getLogger("crunner.sandbox")


@dataclass
class BuildResult:
    diagnostics: str
    succeeded: bool
    timed_out: bool = False


@dataclass
class ExecutionOutcome:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool


async def compile_source(sandbox: DockerSandbox, workspace: Workspace) -> BuildResult:
    """Compile the workspace's source inside the isolated environment.

    The build has its own bound (`compile_timeout_sec`); hitting it counts as a
    failed build. The compiler's diagnostics are returned verbatim.
    """
    settings = sandbox.settings
    name = container_name(workspace, "build")

    async def _remove() -> None:
        await sandbox.remove(name)

    result = await run_supervised(
        sandbox.compile_command(workspace, name),
        timeout=settings.compile_timeout_sec,
        max_output_bytes=settings.max_output_bytes,
        on_abort=_remove,
    )
    if result.timed_out:
        _logger.info("build.timeout id=%s", workspace.id)
        return BuildResult(
            diagnostics=f"Compilation timed out after {settings.compile_timeout_sec:g}s",
            succeeded=False,
            timed_out=True,
        )
    if result.returncode != 0:
        _logger.info("build.failed id=%s rc=%s dur_ms=%s", workspace.id, result.returncode, result.duration_ms)
        diagnostics = result.stderr or result.stdout
        if not diagnostics.strip():
            diagnostics = f"Compilation failed with exit code {result.returncode}"
        return BuildResult(diagnostics=diagnostics, succeeded=False)

    _logger.info("build.ok id=%s dur_ms=%s", workspace.id, result.duration_ms)
    return BuildResult(diagnostics=result.stderr, succeeded=True)


async def execute_program(sandbox: DockerSandbox, workspace: Workspace) -> ExecutionOutcome:
    """Run the compiled artifact with the workspace's input file as stdin.

    A kill by either deadline, the one inside the container or the outer
    supervisory one, is reported as `timed_out` with the sentinel exit code.
    Every other exit code is passed through as-is, including a program's own
    exit(124) before the deadline.
    """
    settings = sandbox.settings
    name = container_name(workspace, "run")

    async def _remove() -> None:
        await sandbox.remove(name)

    result = await run_supervised(
        sandbox.run_command(workspace, name),
        timeout=settings.supervisor_timeout_sec,
        max_output_bytes=settings.max_output_bytes,
        stdin_path=workspace.input_path,
        on_abort=_remove,
    )
    timed_out = result.timed_out or inner_deadline_fired(
        result.returncode, result.duration_ms / 1000, settings.run_timeout_sec
    )
    exit_code = TIMEOUT_EXIT_CODE if timed_out else result.returncode
    _logger.info(
        "run.exit id=%s rc=%s timed_out=%s supervisor_kill=%s dur_ms=%s",
        workspace.id, exit_code, timed_out, result.timed_out, result.duration_ms,
    )
    return ExecutionOutcome(
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=exit_code,
        timed_out=timed_out,
    )
