"""Tests for docker invocation building."""

from pathlib import Path

import pytest

from crunner.config import SandboxSettings
from crunner.sandbox.docker import DockerSandbox, container_name, inner_deadline_fired
from crunner.sandbox.workspace import Workspace


@pytest.fixture
def workspace():
    return Workspace(id="abc123", root=Path("/tmp/c-runner-abc123"))


@pytest.fixture
def sandbox():
    return DockerSandbox(SandboxSettings())


def _option(argv: list[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


def _image_index(argv: list[str]) -> int:
    return argv.index("c-runner:latest")


class TestIsolation:
    """Build and run containers get the same caps."""

    def test_caps_identical_for_build_and_run(self, sandbox, workspace):
        build = sandbox.compile_command(workspace, "n")
        run = sandbox.run_command(workspace, "n")

        build_opts = build[2:_image_index(build)]
        run_opts = [a for a in run[2:_image_index(run)] if a != "-i"]
        assert build_opts == run_opts

    def test_resource_caps(self, sandbox, workspace):
        argv = sandbox.run_command(workspace, "n")

        assert _option(argv, "--network") == "none"
        assert _option(argv, "--memory") == "256m"
        assert _option(argv, "--memory-swap") == "256m"
        assert _option(argv, "--cpu-quota") == "50000"
        assert _option(argv, "--pids-limit") == "64"
        assert _option(argv, "--user") == "1000:1000"
        assert _option(argv, "--cap-drop") == "ALL"
        assert "--read-only" in argv
        assert "--rm" in argv

    def test_only_workspace_is_mounted(self, sandbox, workspace):
        argv = sandbox.run_command(workspace, "n")

        assert argv.count("-v") == 1
        assert _option(argv, "-v") == "/tmp/c-runner-abc123:/workspace"
        assert _option(argv, "--workdir") == "/workspace"

    def test_custom_limits(self, workspace):
        sandbox = DockerSandbox(SandboxSettings(memory_limit="128m", cpu_limit=1.5, pids_limit=16))
        argv = sandbox.compile_command(workspace, "n")

        assert _option(argv, "--memory") == "128m"
        assert _option(argv, "--cpu-quota") == "150000"
        assert _option(argv, "--pids-limit") == "16"


class TestCommands:

    def test_compile_command(self, sandbox, workspace):
        argv = sandbox.compile_command(workspace, "c-runner-abc123-build")

        assert argv[:2] == ["docker", "run"]
        assert _option(argv, "--name") == "c-runner-abc123-build"
        assert argv[_image_index(argv) + 1:] == [
            "gcc", "-std=c11", "-Wall", "-Wextra", "-O2", "main.c", "-o", "main",
        ]

    def test_run_command_enforces_inner_deadline(self, sandbox, workspace):
        argv = sandbox.run_command(workspace, "n")

        assert argv[:3] == ["docker", "run", "-i"]
        assert "-t" not in argv
        assert argv[_image_index(argv) + 1:] == ["timeout", "--kill-after=1", "3", "./main"]

    def test_interactive_command_allocates_tty(self, sandbox, workspace):
        argv = sandbox.interactive_command(workspace, "n", 300.0)

        assert argv[:4] == ["docker", "run", "-i", "-t"]
        assert argv[_image_index(argv) + 1:] == ["timeout", "--kill-after=1", "300", "./main"]

    def test_container_name(self, workspace):
        assert container_name(workspace, "run") == "c-runner-abc123-run"


class TestInnerDeadline:
    """Exit status 124 only means a timeout once the deadline has elapsed."""

    @pytest.mark.parametrize(
        "returncode,elapsed,expected",
        [
            (124, 3.2, True),
            (124, 3.0, True),
            (124, 0.1, False),
            (0, 5.0, False),
            (137, 5.0, False),
            (None, 5.0, False),
        ],
    )
    def test_inner_deadline_fired(self, returncode, elapsed, expected):
        assert inner_deadline_fired(returncode, elapsed, 3.0) is expected


class TestSandboxSettings:

    def test_supervisor_must_exceed_run_timeout(self):
        with pytest.raises(ValueError):
            SandboxSettings(run_timeout_sec=5, supervisor_timeout_sec=5)

    def test_uid_gid(self):
        assert SandboxSettings(user="1000:1000").uid_gid == (1000, 1000)
        assert SandboxSettings(user="1001").uid_gid == (1001, 1001)
        assert SandboxSettings(user="nobody").uid_gid is None


class TestAvailability:

    @pytest.mark.asyncio
    async def test_missing_docker_cli_is_unavailable(self):
        sandbox = DockerSandbox(SandboxSettings(docker_bin="/nonexistent/docker"))

        assert await sandbox.is_available() is False

    @pytest.mark.asyncio
    async def test_remove_tolerates_missing_docker_cli(self):
        sandbox = DockerSandbox(SandboxSettings(docker_bin="/nonexistent/docker"))

        await sandbox.remove("c-runner-x-run")
