"""Ephemeral per-request working directories."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from crunner.errors import WorkspaceError

_logger = logging.getLogger("crunner.workspace")

WORKSPACE_PREFIX = "c-runner-"
SOURCE_FILENAME = "main.c"
INPUT_FILENAME = "input.txt"
ARTIFACT_FILENAME = "main"


@dataclass
class Workspace:
    """A directory owned by exactly one in-flight request or session.

    Attributes:
        id: Unique identifier, also used in container names.
        root: Absolute path of the directory.
        created_at: Allocation time (UTC).
    """

    id: str
    root: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def source_path(self) -> Path:
        return self.root / SOURCE_FILENAME

    @property
    def input_path(self) -> Path:
        return self.root / INPUT_FILENAME

    @property
    def artifact_path(self) -> Path:
        return self.root / ARTIFACT_FILENAME

    def write_source(self, code: str) -> None:
        """Persist the source file before any isolated invocation."""
        self._write(self.source_path, code)

    def write_input(self, data: str) -> None:
        """Persist the batch input file consumed as the program's stdin."""
        self._write(self.input_path, data)

    def _write(self, path: Path, content: str) -> None:
        try:
            path.write_text(content, encoding="utf-8")
            path.chmod(0o644)
        except OSError as exc:
            raise WorkspaceError(
                detail=f"Failed to write {path.name}", workspace_id=self.id
            ) from exc

    def exists(self) -> bool:
        return self.root.exists()

    def destroy(self) -> None:
        """Remove the directory. Safe to call repeatedly or on a partial workspace."""
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            return
        except OSError:
            _logger.exception("workspace.destroy failed id=%s path=%s", self.id, self.root)
            return
        _logger.debug("workspace.destroy id=%s", self.id)


class WorkspaceManager:
    """Allocates workspaces under a base directory.

    Args:
        base_dir: Parent directory; the system temp dir when None.
        owner: Optional (uid, gid) given ownership of new workspaces when the
            service runs as root, so the unprivileged container user can write
            the build artifact.
    """

    def __init__(self, base_dir: Path | None = None, owner: tuple[int, int] | None = None) -> None:
        self._base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
        self._owner = owner

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def allocate(self, workspace_id: str | None = None) -> Workspace:
        """Create a fresh directory.

        Raises:
            WorkspaceError: If the directory cannot be created. Anything
                partially created is removed first.
        """
        workspace_id = workspace_id or uuid.uuid4().hex
        workspace = Workspace(id=workspace_id, root=self._base_dir / f"{WORKSPACE_PREFIX}{workspace_id}")
        try:
            workspace.root.mkdir(mode=0o700, parents=False, exist_ok=False)
            if self._owner is not None and os.geteuid() == 0:
                os.chown(workspace.root, *self._owner)
        except FileExistsError as exc:
            raise WorkspaceError(detail="Workspace already exists", workspace_id=workspace_id) from exc
        except OSError as exc:
            workspace.destroy()
            raise WorkspaceError(detail="Failed to allocate workspace", workspace_id=workspace_id) from exc
        _logger.debug("workspace.allocate id=%s path=%s", workspace_id, workspace.root)
        return workspace

    @contextlib.contextmanager
    def open(self, workspace_id: str | None = None) -> Iterator[Workspace]:
        """Allocate a workspace and destroy it however the block exits."""
        workspace = self.allocate(workspace_id)
        try:
            yield workspace
        finally:
            workspace.destroy()
