import os
import sys
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import pytest
from fastapi.testclient import TestClient
import fakeredis.aioredis as fakeredis

from crunner.config import LimitSettings, clear_settings_cache
from crunner.sandbox import CodeRunner, WorkspaceManager
from crunner.tests.fakes import FakeSandbox, sandbox_settings


@pytest.fixture
def workspace_dir(tmp_path):
    path = tmp_path / "workspaces"
    path.mkdir()
    return path


@pytest.fixture
def fake_sandbox():
    return FakeSandbox(sandbox_settings())


@pytest.fixture
def runner(fake_sandbox, workspace_dir):
    return CodeRunner(fake_sandbox, WorkspaceManager(workspace_dir), LimitSettings())


@pytest.fixture
def client(monkeypatch, workspace_dir):
    import crunner.lifespan as lifespan
    import crunner.main as main

    monkeypatch.setenv("SANDBOX_WORKSPACE_DIR", str(workspace_dir))
    monkeypatch.setenv("SANDBOX_RUN_TIMEOUT_SEC", "1")
    monkeypatch.setenv("SANDBOX_SUPERVISOR_TIMEOUT_SEC", "2")
    monkeypatch.setenv("INTERACTIVE_TIMEOUT_SEC", "5")
    monkeypatch.setenv("INTERACTIVE_SUPERVISOR_TIMEOUT_SEC", "10")
    clear_settings_cache()

    monkeypatch.setattr(lifespan, "DockerSandbox", FakeSandbox)
    monkeypatch.setattr(lifespan.redis, "Redis", lambda *_a, **_kw: fakeredis.FakeRedis(decode_responses=True))

    with TestClient(main.app) as c:
        yield c
    clear_settings_cache()
