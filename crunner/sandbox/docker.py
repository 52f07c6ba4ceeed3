"""Docker CLI invocations for the isolated build and run environments.

Security is provided by Docker's isolation features, applied identically
to the compile and run containers:
- --network none: No network access
- --read-only: Read-only root filesystem (except /tmp and the workspace)
- --memory/--memory-swap: Memory ceiling
- --cpu-period/--cpu-quota: CPU share
- --pids-limit: Process limits
- --cap-drop ALL: Drop all capabilities
- --security-opt no-new-privileges: Prevent privilege escalation
- --user: Fixed unprivileged identity
- -v <workspace>:/workspace: The only host path visible to the program

The run deadline is enforced inside the container by GNU timeout, so the
program dies even if the supervising process on the host stalls.
"""

import asyncio
import contextlib
import logging

from crunner.config import SandboxSettings
from crunner.sandbox.workspace import ARTIFACT_FILENAME, SOURCE_FILENAME, Workspace

_logger = logging.getLogger("crunner.sandbox")

# GNU timeout's exit status when the deadline fires
TIMEOUT_EXIT_CODE = 124
CONTAINER_PREFIX = "c-runner-"
# Grace between timeout's TERM and KILL inside the container
KILL_AFTER_SEC = 1


def container_name(workspace: Workspace, stage: str) -> str:
    return f"{CONTAINER_PREFIX}{workspace.id}-{stage}"


def inner_deadline_fired(returncode: int | None, elapsed_sec: float, deadline_sec: float) -> bool:
    """Whether an exit status comes from GNU timeout rather than the program.

    timeout also exits 124 when the program itself does, so the status only
    counts once the deadline has actually elapsed.
    """
    return returncode == TIMEOUT_EXIT_CODE and elapsed_sec >= deadline_sec


class DockerSandbox:
    """Builds and manages `docker run` invocations for one image."""

    def __init__(self, settings: SandboxSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    def _isolation_args(self, workspace: Workspace, name: str) -> list[str]:
        s = self._settings
        cpu_quota = int(100000 * s.cpu_limit)
        return [
            "--rm",
            "--name", name,
            "--network", "none",
            "--memory", s.memory_limit,
            "--memory-swap", s.memory_limit,
            "--cpu-period", "100000",
            "--cpu-quota", str(cpu_quota),
            "--pids-limit", str(s.pids_limit),
            "--read-only",
            "--tmpfs", f"/tmp:size={s.tmpfs_size},mode=1777",
            "--security-opt", "no-new-privileges:true",
            "--cap-drop", "ALL",
            "--user", s.user,
            "-v", f"{workspace.root}:{s.workdir}",
            "--workdir", s.workdir,
        ]

    def _deadline(self, seconds: float) -> list[str]:
        return ["timeout", f"--kill-after={KILL_AFTER_SEC}", f"{seconds:g}"]

    def compile_command(self, workspace: Workspace, name: str) -> list[str]:
        s = self._settings
        return [
            s.docker_bin, "run",
            *self._isolation_args(workspace, name),
            s.image,
            s.compiler, *s.compile_flags, SOURCE_FILENAME, "-o", ARTIFACT_FILENAME,
        ]

    def run_command(self, workspace: Workspace, name: str) -> list[str]:
        """Command for a batch run; stdin is forwarded with -i."""
        s = self._settings
        return [
            s.docker_bin, "run", "-i",
            *self._isolation_args(workspace, name),
            s.image,
            *self._deadline(s.run_timeout_sec), f"./{ARTIFACT_FILENAME}",
        ]

    def interactive_command(self, workspace: Workspace, name: str, timeout_sec: float) -> list[str]:
        """Command for a terminal-attached run; -t allocates a tty in the container."""
        s = self._settings
        return [
            s.docker_bin, "run", "-i", "-t",
            *self._isolation_args(workspace, name),
            s.image,
            *self._deadline(timeout_sec), f"./{ARTIFACT_FILENAME}",
        ]

    async def remove(self, name: str) -> None:
        """Force-remove a container that may have outlived its docker client."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._settings.docker_bin, "rm", "-f", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            _logger.warning("sandbox.remove failed name=%s err=%r", name, e)
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=10)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            _logger.warning("sandbox.remove timed out name=%s", name)
        else:
            _logger.debug("sandbox.remove name=%s rc=%s", name, proc.returncode)

    async def is_available(self) -> bool:
        """Check that the docker CLI answers and the image exists."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._settings.docker_bin, "image", "inspect", self._settings.image,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        try:
            return await asyncio.wait_for(proc.wait(), timeout=10) == 0
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            return False
