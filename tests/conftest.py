"""Shared pytest fixtures for code-grader tests."""

import logging
import shutil
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest

from code_grader.config import SchedulerConfig
from code_grader.constants import WORKSPACE_ROOT_MODE
from code_grader.platform_utils import HostOS, detect_host_os
from code_grader.sandbox import SandboxRunner
from code_grader.scheduler import Scheduler

# ============================================================================
# Skip Markers
# ============================================================================

# Skip marker for Linux-only tests (RLIMIT_AS, network namespaces, etc.)
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (RLIMIT_AS, network namespaces, etc.)",
)


def _toolchain_marker(executable: str, language: str) -> pytest.MarkDecorator:
    return pytest.mark.skipif(
        shutil.which(executable) is None,
        reason=f"{language} toolchain not installed ({executable} not on PATH)",
    )


# Toolchain markers: tests compiling/running real submissions in a language
skip_unless_python = _toolchain_marker("python3", "Python")
skip_unless_node = _toolchain_marker("node", "JavaScript")
skip_unless_gxx = _toolchain_marker("g++", "C++")
skip_unless_gcc = _toolchain_marker("gcc", "C")
skip_unless_java = pytest.mark.skipif(
    shutil.which("javac") is None or shutil.which("java") is None,
    reason="Java toolchain not installed (javac/java not on PATH)",
)

# ============================================================================
# Common Paths and Config Fixtures
# ============================================================================


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Per-test parent directory for execution workspaces."""
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def scheduler_config(workspace_root: Path) -> SchedulerConfig:
    """SchedulerConfig with test settings.

    Workspaces live under the test's tmp_path so leftovers are visible to
    assertions. Network isolation is off: the unshare capability check is covered by
    its own tests and is unavailable in many CI containers.
    """
    return SchedulerConfig(workspace_root=workspace_root, isolate_network=False)


@pytest.fixture
async def scheduler(scheduler_config: SchedulerConfig) -> AsyncGenerator[Scheduler, None]:
    """Scheduler instance for integration tests.

    Usage:
        async def test_something(scheduler: Scheduler) -> None:
            report = await scheduler.grade(request)
    """
    async with Scheduler(scheduler_config) as sched:
        yield sched


@pytest.fixture
def runner() -> SandboxRunner:
    """Sandbox runner without network isolation."""
    return SandboxRunner(isolate_network=False)


# ============================================================================
# Test Utilities
# ============================================================================


@pytest.fixture(autouse=True)
def debug_logging() -> Iterator[None]:
    """Run every test with code_grader DEBUG records enabled (exercises every log call)."""
    package_logger = logging.getLogger("code_grader")
    level = package_logger.level
    package_logger.setLevel(logging.DEBUG)
    yield
    package_logger.setLevel(level)


def leftover_workspaces(root: Path) -> list[Path]:
    """Entries of a workspace root, which is unlistable while in use."""
    root.chmod(0o700)
    try:
        return list(root.iterdir())
    finally:
        root.chmod(WORKSPACE_ROOT_MODE)
