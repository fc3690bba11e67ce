"""Disposable per-execution workspaces.

Every sandboxed process gets its own directory: the compile step works in
one holding only the submitted source, and every test-case run works in a
fresh copy of the compile directory (source plus compiled artifacts). No
two processes ever share a directory, and each directory is deleted when
its context exits, however it exits. The root itself is search-only for
its owner (WORKSPACE_ROOT_MODE): sandboxed processes share the grader's uid
and must not be able to enumerate sibling workspaces.

Example:
    ```python
    async with Workspace(root, execution_id) as ws:
        source = await ws.write_file("solution.py", code)
        result = await runner.run([...], workdir=ws.path, ...)
    # directory is gone here
    ```
"""

from __future__ import annotations

import asyncio
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Self

import aiofiles

from code_grader._logging import get_logger
from code_grader.constants import WORKSPACE_DIR_PREFIX, WORKSPACE_ROOT_MODE
from code_grader.exceptions import SandboxInternalError
from code_grader.resource_cleanup import cleanup_workspace

logger = get_logger(__name__)


class Workspace:
    """Scoped temporary directory under the configured workspace root."""

    def __init__(self, root: Path, context_id: str, seed: Workspace | None = None) -> None:
        """
        Args:
            root: Parent directory (created on demand)
            context_id: Execution id, used in the directory name and logs
            seed: Workspace whose files are copied in on entry
        """
        self._root = root
        self._context_id = context_id
        self._seed = seed
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        """Absolute path of the directory (only valid inside the context)."""
        if self._path is None:
            raise RuntimeError("Workspace is not active")
        return self._path

    async def __aenter__(self) -> Self:
        try:
            self._path = await asyncio.to_thread(self._create)
        except OSError as e:
            raise SandboxInternalError(
                f"Failed to create workspace: {e}",
                context={"context_id": self._context_id, "root": str(self._root)},
            ) from e
        logger.debug("workspace created", extra={"context_id": self._context_id, "path": str(self._path)})
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        path, self._path = self._path, None
        await cleanup_workspace(path, self._context_id)

    def _create(self) -> Path:
        self._root.mkdir(mode=WORKSPACE_ROOT_MODE, parents=True, exist_ok=True)
        root_stat = self._root.stat()
        if root_stat.st_uid == os.geteuid() and stat.S_IMODE(root_stat.st_mode) != WORKSPACE_ROOT_MODE:
            os.chmod(self._root, WORKSPACE_ROOT_MODE)
        path = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_DIR_PREFIX}{self._context_id}-", dir=self._root))
        os.chmod(path, 0o700)
        if self._seed is not None:
            shutil.copytree(self._seed.path, path, dirs_exist_ok=True)
        return path.resolve()

    async def write_file(self, name: str, content: str) -> Path:
        """Write a text file into the workspace and return its absolute path.

        Raises:
            SandboxInternalError: The file could not be written
        """
        target = self.path / name
        if target.parent != self.path:
            raise ValueError(f"Workspace file name must not contain directories: {name!r}")
        try:
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            raise SandboxInternalError(
                f"Failed to write {name} into workspace: {e}",
                context={"context_id": self._context_id},
            ) from e
        return target
