"""Tests for SandboxRunner with real child processes.

Programs are run with the current interpreter (sys.executable) so these
tests need no extra toolchain.
"""

import asyncio
import errno
import json
import os
import sys
import textwrap
import time
from pathlib import Path

import pytest

from code_grader.constants import SPAWN_MAX_ATTEMPTS
from code_grader.exceptions import SandboxInternalError
from code_grader.sandbox import ResourceLimits, SandboxRunner, build_preexec
from tests.conftest import skip_unless_linux

PY = sys.executable

# ============================================================================
# Helpers
# ============================================================================


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "ws"
    path.mkdir()
    return path


def _limits(time_limit: float = 5, memory_mb: int = 256, **kwargs: object) -> ResourceLimits:
    return ResourceLimits(time_limit_seconds=time_limit, memory_limit_mb=memory_mb, **kwargs)  # type: ignore[arg-type]


def _py(code: str) -> list[str]:
    return [PY, "-c", textwrap.dedent(code)]


# ============================================================================
# Basic I/O
# ============================================================================


async def test_stdin_round_trip(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(
        _py("import sys; sys.stdout.write(sys.stdin.read().upper())"),
        workdir=workdir,
        limits=_limits(),
        stdin="hello world",
    )
    assert result.exit_code == 0
    assert result.stdout == "HELLO WORLD"
    assert result.stderr == ""
    assert not result.timed_out
    assert not result.memory_exceeded
    assert result.execution_time_ms > 0


async def test_exit_code_and_stderr(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(
        _py("import sys; print('partial'); sys.stderr.write('bad input\\n'); sys.exit(3)"),
        workdir=workdir,
        limits=_limits(),
    )
    assert result.exit_code == 3
    assert result.stdout == "partial\n"
    assert result.stderr == "bad input\n"


async def test_unread_stdin_is_not_an_error(runner: SandboxRunner, workdir: Path) -> None:
    """A program that exits without reading its input still completes normally."""
    result = await runner.run(_py("print('done')"), workdir=workdir, limits=_limits(), stdin="x" * 1_000_000)
    assert result.exit_code == 0
    assert result.stdout == "done\n"


async def test_cwd_is_workdir(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(_py("import os; print(os.getcwd())"), workdir=workdir, limits=_limits())
    assert Path(result.stdout.strip()).resolve() == workdir.resolve()


async def test_minimal_environment(
    runner: SandboxRunner, workdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The child does not inherit the grader's environment."""
    monkeypatch.setenv("GRADER_SECRET_TOKEN", "s3cr3t")
    result = await runner.run(
        _py("import os, json; print(json.dumps(dict(os.environ)))"),
        workdir=workdir,
        limits=_limits(),
    )
    env = json.loads(result.stdout)
    assert "GRADER_SECRET_TOKEN" not in env
    assert env["HOME"] == str(workdir)
    assert env["TMPDIR"] == str(workdir)
    assert os.path.dirname(PY) in env["PATH"].split(":")


async def test_stdout_bounded(workdir: Path) -> None:
    """Runaway output is drained but only the first bytes are kept."""
    runner = SandboxRunner(isolate_network=False, max_stdout_bytes=1000)
    result = await runner.run(
        _py("import sys; sys.stdout.write('x' * 5_000_000)"),
        workdir=workdir,
        limits=_limits(),
    )
    assert result.exit_code == 0
    assert len(result.stdout) == 1000
    assert result.stdout_truncated
    assert not result.stderr_truncated


# ============================================================================
# Time Limit
# ============================================================================


async def test_timeout_kills_process(runner: SandboxRunner, workdir: Path) -> None:
    start = time.monotonic()
    result = await runner.run(_py("import time; time.sleep(30)"), workdir=workdir, limits=_limits(time_limit=1))
    elapsed = time.monotonic() - start

    assert result.timed_out
    assert not result.memory_exceeded
    assert result.execution_time_ms >= 1000
    assert elapsed < 10


async def test_busy_loop_timeout(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(_py("while True: pass"), workdir=workdir, limits=_limits(time_limit=0.5))
    assert result.timed_out
    assert result.execution_time_ms >= 500


async def test_output_before_timeout_kept(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(
        _py("import time; print('started', flush=True); time.sleep(30)"),
        workdir=workdir,
        limits=_limits(time_limit=1),
    )
    assert result.timed_out
    assert result.stdout == "started\n"


# ============================================================================
# Process Tree Cleanup
# ============================================================================


async def test_timeout_kills_descendants(runner: SandboxRunner, workdir: Path) -> None:
    """Children of a timed-out program do not survive the run."""
    marker = workdir / "child-alive"
    code = f"""
        import subprocess, sys, time
        subprocess.Popen([sys.executable, "-c", "import time, pathlib; time.sleep(2); pathlib.Path({str(marker)!r}).write_text('x')"])
        time.sleep(30)
    """
    result = await runner.run(_py(code), workdir=workdir, limits=_limits(time_limit=1))
    assert result.timed_out

    await asyncio.sleep(2.5)
    assert not marker.exists()


async def test_orphans_killed_after_leader_exits(runner: SandboxRunner, workdir: Path) -> None:
    """A program that forks and exits immediately leaves nothing running."""
    marker = workdir / "orphan-alive"
    code = f"""
        import subprocess, sys
        subprocess.Popen([sys.executable, "-c", "import time, pathlib; time.sleep(1.5); pathlib.Path({str(marker)!r}).write_text('x')"])
        print("parent done")
    """
    start = time.monotonic()
    result = await runner.run(_py(code), workdir=workdir, limits=_limits(time_limit=10))
    assert result.exit_code == 0
    assert result.stdout == "parent done\n"
    assert not result.timed_out
    assert time.monotonic() - start < 5

    await asyncio.sleep(2)
    assert not marker.exists()


# ============================================================================
# Memory Limit
# ============================================================================


@skip_unless_linux
async def test_address_space_limit_reports_memory_exceeded(runner: SandboxRunner, workdir: Path) -> None:
    """RLIMIT_AS makes the allocation fail; the MemoryError marker is detected."""
    result = await runner.run(
        _py("data = bytearray(1024 * 1024 * 1024)"),
        workdir=workdir,
        limits=_limits(memory_mb=64, memory_error_markers=("MemoryError",)),
    )
    assert result.exit_code != 0
    assert result.memory_exceeded
    assert not result.timed_out


async def test_resident_watchdog_kills_tree(runner: SandboxRunner, workdir: Path) -> None:
    """Without RLIMIT_AS the RSS watchdog still enforces the ceiling."""
    code = """
        import time
        data = b"x" * (400 * 1024 * 1024)
        time.sleep(30)
    """
    limits = _limits(time_limit=10, memory_mb=64, memory_rlimit=False)
    result = await runner.run(_py(code), workdir=workdir, limits=limits)
    assert result.memory_exceeded
    assert not result.timed_out
    assert result.exit_code != 0


async def test_marker_ignored_on_clean_exit(runner: SandboxRunner, workdir: Path) -> None:
    result = await runner.run(
        _py("print('MemoryError is just text here')"),
        workdir=workdir,
        limits=_limits(memory_error_markers=("MemoryError",)),
    )
    assert result.exit_code == 0
    assert not result.memory_exceeded


def test_resident_ceiling_includes_runtime_overhead() -> None:
    limits = _limits(memory_mb=64, runtime_overhead_mb=96)
    assert limits.resident_ceiling_bytes == 160 * 1024 * 1024


def test_build_preexec_returns_callable() -> None:
    assert callable(build_preexec(_limits()))


# ============================================================================
# Failures
# ============================================================================


async def test_missing_executable(runner: SandboxRunner, workdir: Path) -> None:
    with pytest.raises(SandboxInternalError, match="not found"):
        await runner.run(["definitely-not-a-compiler-xyz", "main.c"], workdir=workdir, limits=_limits())


async def test_empty_command(runner: SandboxRunner, workdir: Path) -> None:
    with pytest.raises(SandboxInternalError):
        await runner.run([], workdir=workdir, limits=_limits())


async def test_non_utf8_stdin_spawns_nothing(
    runner: SandboxRunner, workdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A lone surrogate cannot be written to a pipe; it fails before any child exists."""
    spawned = 0

    async def counting_exec(*args: object, **kwargs: object) -> asyncio.subprocess.Process:
        nonlocal spawned
        spawned += 1
        raise AssertionError("process spawned")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", counting_exec)
    with pytest.raises(UnicodeEncodeError):
        await runner.run(_py("print(input())"), workdir=workdir, limits=_limits(), stdin="\udc80")
    assert spawned == 0


async def test_missing_workdir(runner: SandboxRunner, tmp_path: Path) -> None:
    with pytest.raises(SandboxInternalError, match="spawn"):
        await runner.run(_py("print(1)"), workdir=tmp_path / "gone", limits=_limits())


async def test_transient_spawn_failure_retried(
    runner: SandboxRunner, workdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """EAGAIN from fork is retried; the program still runs."""
    real_exec = asyncio.create_subprocess_exec
    attempts = 0

    async def flaky_exec(*args: object, **kwargs: object) -> asyncio.subprocess.Process:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise BlockingIOError(errno.EAGAIN, "Resource temporarily unavailable")
        return await real_exec(*args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(asyncio, "create_subprocess_exec", flaky_exec)
    result = await runner.run(_py("print('ok')"), workdir=workdir, limits=_limits())
    assert result.stdout == "ok\n"
    assert attempts == 2


async def test_persistent_spawn_failure_raises(
    runner: SandboxRunner, workdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    attempts = 0

    async def exhausted_exec(*args: object, **kwargs: object) -> asyncio.subprocess.Process:
        nonlocal attempts
        attempts += 1
        raise OSError(errno.EMFILE, "Too many open files")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", exhausted_exec)
    with pytest.raises(SandboxInternalError, match="Too many open files") as exc_info:
        await runner.run(_py("print('ok')"), workdir=workdir, limits=_limits())
    assert exc_info.value.context["errno"] == errno.EMFILE
    assert attempts == SPAWN_MAX_ATTEMPTS


# ============================================================================
# Network Isolation
# ============================================================================


async def test_network_isolation_disabled() -> None:
    assert await SandboxRunner(isolate_network=False).network_isolation_available() is False


@skip_unless_linux
async def test_network_namespace_has_no_route(workdir: Path) -> None:
    """When unshare works, the child cannot reach any outside address."""
    runner = SandboxRunner(isolate_network=True)
    if not await runner.network_isolation_available():
        pytest.skip("unprivileged network namespaces unavailable on this host")
    code = """
        import socket
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.settimeout(2)
        try:
            s.connect(("1.1.1.1", 53))
            print("connected")
        except OSError:
            print("isolated")
    """
    result = await runner.run(_py(code), workdir=workdir, limits=_limits())
    assert result.stdout.strip() == "isolated"


# ============================================================================
# Filesystem Isolation
# ============================================================================


async def test_filesystem_isolation_disabled() -> None:
    assert await SandboxRunner(isolate_filesystem=False).filesystem_isolation_available() is False


@skip_unless_linux
async def test_sibling_workspaces_hidden(tmp_path: Path) -> None:
    """Inside a mount namespace only the run's own directory exists under the root."""
    runner = SandboxRunner(isolate_network=False)
    if not await runner.filesystem_isolation_available():
        pytest.skip("unprivileged mount namespaces unavailable on this host")
    root = tmp_path / "root"
    workdir = root / "mine"
    sibling = root / "theirs"
    workdir.mkdir(parents=True)
    sibling.mkdir()
    (sibling / "solution.py").write_text("SECRET = 'sibling-source'")
    code = """
        import glob, os
        open('result.txt', 'w').write('written')
        print(sorted(os.listdir('..')), [open(p).read() for p in glob.glob('../*/solution.py')])
    """
    result = await runner.run(_py(code), workdir=workdir, limits=_limits())
    assert result.exit_code == 0, result.stderr
    assert result.stdout.strip() == "['mine'] []"
    assert (workdir / "result.txt").read_text() == "written"
    assert (sibling / "solution.py").exists()
