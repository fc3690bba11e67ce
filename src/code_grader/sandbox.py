"""Sandbox runner: one isolated child process per compile or test-case run.

Isolation layers (no container runtime involved):
    1. Disposable per-execution working directory (see workspace.py)
    2. Own session / process group, so the whole tree can be killed
    3. POSIX rlimits applied in the child before exec:
       RLIMIT_AS (address space), RLIMIT_CPU (backstop), RLIMIT_FSIZE, RLIMIT_CORE=0
    4. Resident-memory watchdog over the whole process tree (psutil)
    5. Fresh network namespace via ``unshare --net`` when the host allows it
    6. Fresh mount namespace via ``unshare --mount`` when the host allows it:
       the workspace root is covered by an empty tmpfs and only the run's own
       directory is mounted back, so concurrent workspaces are invisible.
       Without it the root is still unlistable (WORKSPACE_ROOT_MODE).
    7. Minimal environment (PATH, HOME, TMPDIR, LANG)

Deadline handling: the wall-clock limit is enforced by the parent. On
expiry the process group and every known descendant receive SIGKILL and
the leader is reaped before run() returns, so no orphan survives a run.

Output handling: stdout/stderr are drained concurrently into bounded
buffers (see subprocess_utils.read_bounded); runaway output cannot grow
the grader's memory.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import math
import resource
import shutil
import signal
import tempfile
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_random_exponential

from code_grader._logging import get_logger
from code_grader.constants import (
    CPU_LIMIT_MARGIN_SECONDS,
    MAX_OUTPUT_FILE_SIZE_BYTES,
    MAX_STDERR_SIZE,
    MAX_STDOUT_SIZE,
    MEMORY_POLL_INTERVAL_SECONDS,
    NAMESPACE_PROBE_TIMEOUT_SECONDS,
    PROCESS_KILL_TIMEOUT_SECONDS,
    SANDBOX_PATH,
    SPAWN_MAX_ATTEMPTS,
    SPAWN_RETRY_MAX_SECONDS,
    SPAWN_RETRY_MIN_SECONDS,
    STDIN_WRITE_TIMEOUT_SECONDS,
    VIRTUAL_MEMORY_MULTIPLIER,
)
from code_grader.exceptions import SandboxInternalError
from code_grader.platform_utils import HostOS, ProcessWrapper, detect_host_os
from code_grader.resource_cleanup import cleanup_process_tree, cleanup_workspace
from code_grader.settings import Settings, get_settings
from code_grader.subprocess_utils import (
    CapturedStream,
    decode_output,
    feed_stdin,
    log_task_exception,
    read_bounded,
)

logger = get_logger(__name__)

_MB = 1024 * 1024

_TRANSIENT_SPAWN_ERRNOS = frozenset({errno.EAGAIN, errno.EMFILE, errno.ENFILE, errno.ENOMEM})


def _is_transient_spawn_error(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in _TRANSIENT_SPAWN_ERRNOS


@dataclass(frozen=True)
class ResourceLimits:
    """Limits for one sandboxed process."""

    time_limit_seconds: float
    memory_limit_mb: int
    memory_rlimit: bool = True
    """Apply RLIMIT_AS. JVMs and V8 reserve huge address spaces and must rely on the watchdog."""
    runtime_overhead_mb: int = 0
    """Resident memory of the language runtime allowed on top of memory_limit_mb."""
    memory_error_markers: tuple[str, ...] = ()
    """stderr substrings meaning the program hit its memory ceiling."""

    @property
    def resident_ceiling_bytes(self) -> int:
        return (self.memory_limit_mb + self.runtime_overhead_mb) * _MB


@dataclass(frozen=True)
class SandboxResult:
    """Outcome of one sandboxed process."""

    exit_code: int
    stdout: str
    stderr: str
    execution_time_ms: int
    timed_out: bool = False
    memory_exceeded: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False


def build_preexec(limits: ResourceLimits) -> Callable[[], None]:
    """Return the function applying rlimits in the child between fork and exec.

    Runs in the forked child: no logging, no allocation-heavy work. A limit
    the kernel refuses (hard limit already lower, RLIMIT_AS on macOS) is
    skipped, the parent-side deadline and watchdog still apply.
    """
    cpu_seconds = math.ceil(limits.time_limit_seconds) + CPU_LIMIT_MARGIN_SECONDS
    address_space = limits.memory_limit_mb * VIRTUAL_MEMORY_MULTIPLIER * _MB
    apply_as = limits.memory_rlimit and detect_host_os() == HostOS.LINUX

    def _apply_limits() -> None:
        with contextlib.suppress(ValueError, OSError):
            resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        with contextlib.suppress(ValueError, OSError):
            resource.setrlimit(resource.RLIMIT_FSIZE, (MAX_OUTPUT_FILE_SIZE_BYTES, MAX_OUTPUT_FILE_SIZE_BYTES))
        with contextlib.suppress(ValueError, OSError):
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if apply_as:
            with contextlib.suppress(ValueError, OSError):
                resource.setrlimit(resource.RLIMIT_AS, (address_space, address_space))

    return _apply_limits


# Runs in a fresh mount namespace before the sandboxed command: an empty
# tmpfs over the workspace root hides every sibling workspace, then the run's
# own directory is bind-mounted back ("." still reaches it through the cwd).
# Arguments: root, workdir, mount binary, then the command.
_FILESYSTEM_WRAPPER = """\
set -e
root=$1 workdir=$2 mount_bin=$3
shift 3
cd "$workdir"
"$mount_bin" -t tmpfs -o mode=0711,size=1m code-grader "$root"
mkdir "$workdir"
"$mount_bin" --no-canonicalize --bind . "$workdir"
cd "$workdir"
exec "$@"
"""


def filesystem_wrapper(shell: str, mount_bin: str, workdir: Path) -> list[str]:
    """argv prefix that limits the command's view of the workspace root to workdir."""
    return [shell, "-c", _FILESYSTEM_WRAPPER, "code-grader-sandbox", str(workdir.parent), str(workdir), mount_bin]


class _NamespaceProbe:
    """Cached answer to "does this ``unshare`` wrapper work for this user?".

    The lock prevents a probe stampede when many runs start at once.
    """

    __slots__ = ("_lock", "_probe", "_warning", "supported")

    def __init__(self, probe: Callable[[Settings], Awaitable[bool]], warning: str) -> None:
        self.supported: bool | None = None
        self._lock: asyncio.Lock | None = None
        self._probe = probe
        self._warning = warning

    async def check(self, settings: Settings) -> bool:
        if self.supported is not None:
            return self.supported
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self.supported is None:
                self.supported = await self._probe(settings)
                if not self.supported:
                    logger.warning(self._warning, extra={"unshare_bin": settings.unshare_bin})
        return self.supported


async def _probe_succeeds(argv: list[str], cwd: Path | None = None) -> bool:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        async with asyncio.timeout(NAMESPACE_PROBE_TIMEOUT_SECONDS):
            return await proc.wait() == 0
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return False


async def _probe_network(settings: Settings) -> bool:
    """Check that an unprivileged ``unshare --net --map-root-user true`` succeeds."""
    if detect_host_os() != HostOS.LINUX:
        return False
    binary = shutil.which(settings.unshare_bin)
    true_bin = shutil.which("true")
    if binary is None or true_bin is None:
        return False
    return await _probe_succeeds([binary, "--net", "--map-root-user", true_bin])


def _make_probe_tree() -> Path:
    root = Path(tempfile.mkdtemp(prefix="code-grader-probe-")).resolve()
    workdir = root / "ws"
    workdir.mkdir()
    (workdir / "probe").touch()
    (root / "peer").mkdir()
    return workdir


async def _probe_filesystem(settings: Settings) -> bool:
    """Check that the mount wrapper hides a sibling directory and keeps the workdir."""
    if detect_host_os() != HostOS.LINUX:
        return False
    binary = shutil.which(settings.unshare_bin)
    shell = shutil.which("sh")
    mount_bin = shutil.which(settings.mount_bin)
    if binary is None or shell is None or mount_bin is None:
        return False
    try:
        workdir = await asyncio.to_thread(_make_probe_tree)
    except OSError:
        return False
    try:
        return await _probe_succeeds(
            [
                binary,
                "--mount",
                "--map-root-user",
                *filesystem_wrapper(shell, mount_bin, workdir),
                shell,
                "-c",
                "test -f probe && test ! -e ../peer",
            ],
            cwd=workdir,
        )
    finally:
        await cleanup_workspace(workdir.parent, "filesystem-probe")


_network_probe = _NamespaceProbe(
    _probe_network,
    "Network namespaces unavailable, sandboxed processes keep host network access",
)
_filesystem_probe = _NamespaceProbe(
    _probe_filesystem,
    "Mount namespaces unavailable, sibling workspaces are hidden by directory permissions only",
)


class SandboxRunner:
    """Runs one command at a time per call, with strict isolation and accounting.

    Stateless apart from the cached namespace probes: a single runner is
    shared by every concurrent execution.
    """

    def __init__(
        self,
        *,
        isolate_network: bool = True,
        isolate_filesystem: bool = True,
        settings: Settings | None = None,
        max_stdout_bytes: int = MAX_STDOUT_SIZE,
        max_stderr_bytes: int = MAX_STDERR_SIZE,
    ) -> None:
        self._isolate_network = isolate_network
        self._isolate_filesystem = isolate_filesystem
        self._settings = settings or get_settings()
        self._max_stdout_bytes = max_stdout_bytes
        self._max_stderr_bytes = max_stderr_bytes

    async def network_isolation_available(self) -> bool:
        """Whether runs get a private network namespace on this host."""
        if not self._isolate_network:
            return False
        return await _network_probe.check(self._settings)

    async def filesystem_isolation_available(self) -> bool:
        """Whether runs get a private mount namespace hiding sibling workspaces."""
        if not self._isolate_filesystem:
            return False
        return await _filesystem_probe.check(self._settings)

    async def _build_argv(self, command: Sequence[str], workdir: Path) -> tuple[list[str], str]:
        """Resolve the executable on the host PATH and add the namespace wrappers.

        Returns:
            (argv, PATH for the child)

        Raises:
            SandboxInternalError: Executable not found
        """
        if not command:
            raise SandboxInternalError("Empty command")
        executable = shutil.which(command[0])
        if executable is None:
            raise SandboxInternalError(
                f"Toolchain executable not found: {command[0]}",
                context={"command": list(command)},
            )
        path = f"{Path(executable).parent}:{SANDBOX_PATH}"
        argv = [executable, *command[1:]]
        network = await self.network_isolation_available()
        filesystem = await self.filesystem_isolation_available()
        if filesystem:
            shell = shutil.which("sh") or "sh"
            mount_bin = shutil.which(self._settings.mount_bin) or self._settings.mount_bin
            argv = [*filesystem_wrapper(shell, mount_bin, workdir.resolve()), *argv]
        if network or filesystem:
            unshare = shutil.which(self._settings.unshare_bin) or self._settings.unshare_bin
            flags = ["--net"] if network else []
            if filesystem:
                flags.append("--mount")
            argv = [unshare, *flags, "--map-root-user", *argv]
        return argv, path

    async def run(
        self,
        command: Sequence[str],
        *,
        workdir: Path,
        limits: ResourceLimits,
        stdin: str = "",
        context_id: str = "",
        name: str = "run",
    ) -> SandboxResult:
        """Execute command inside workdir under limits.

        Args:
            command: argv; argv[0] is resolved on the host PATH
            workdir: Disposable working directory owned by this execution
            limits: Time / memory limits
            stdin: Payload written to the child's stdin (then closed)
            context_id: Execution id for log correlation
            name: Step name for logs ("compile", "run")

        Returns:
            SandboxResult; the process tree is dead and reaped

        Raises:
            SandboxInternalError: The process could not be spawned
            UnicodeEncodeError: stdin is not UTF-8 text (nothing is spawned)
        """
        payload = stdin.encode("utf-8")
        argv, child_path = await self._build_argv(command, workdir)
        env = {
            "PATH": child_path,
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        }

        proc = await self._spawn(argv, workdir=workdir, env=env, limits=limits, context_id=context_id, name=name)
        loop = asyncio.get_running_loop()
        start = loop.time()

        logger.debug(
            f"{name} process started",
            extra={"context_id": context_id, "pid": proc.pid, "command": argv},
        )

        memory_exceeded = False

        async def _watch_memory() -> None:
            nonlocal memory_exceeded
            ceiling = limits.resident_ceiling_bytes
            while proc.returncode is None:
                rss = await asyncio.to_thread(proc.tree_rss_bytes)
                if rss > ceiling:
                    memory_exceeded = True
                    logger.debug(
                        f"{name} exceeded memory ceiling",
                        extra={"context_id": context_id, "rss_mb": rss // _MB, "ceiling_mb": ceiling // _MB},
                    )
                    await proc.kill_tree()
                    return
                await asyncio.sleep(MEMORY_POLL_INTERVAL_SECONDS)

        stdout_task = asyncio.create_task(read_bounded(proc.stdout, self._max_stdout_bytes))
        stderr_task = asyncio.create_task(read_bounded(proc.stderr, self._max_stderr_bytes))
        stdin_task = asyncio.create_task(
            feed_stdin(proc.stdin, payload, STDIN_WRITE_TIMEOUT_SECONDS),
        )
        watchdog = asyncio.create_task(_watch_memory())
        watchdog.add_done_callback(log_task_exception)

        timed_out = False
        try:
            try:
                async with asyncio.timeout(limits.time_limit_seconds):
                    await proc.wait_exit()
            except TimeoutError:
                timed_out = True
                await proc.kill_tree()
            elapsed_ms = math.ceil((loop.time() - start) * 1000)

            # Descendants that outlived the leader still hold the pipes open
            await proc.kill_tree()
            stdout_cap, stderr_cap = await self._collect(stdout_task, stderr_task, context_id)
        finally:
            for task in (watchdog, stdin_task, stdout_task, stderr_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(watchdog, stdin_task, stdout_task, stderr_task, return_exceptions=True)
            await cleanup_process_tree(proc, name, context_id)

        exit_code = proc.returncode if proc.returncode is not None else -1
        stderr_text = decode_output(stderr_cap.data)

        if exit_code == -signal.SIGXCPU:
            # CPU-time backstop fired before the wall-clock deadline
            timed_out = True
        if not timed_out and not memory_exceeded and exit_code != 0:
            memory_exceeded = any(marker in stderr_text for marker in limits.memory_error_markers)
        if timed_out:
            elapsed_ms = max(elapsed_ms, math.ceil(limits.time_limit_seconds * 1000))

        result = SandboxResult(
            exit_code=exit_code,
            stdout=decode_output(stdout_cap.data),
            stderr=stderr_text,
            execution_time_ms=elapsed_ms,
            timed_out=timed_out,
            memory_exceeded=memory_exceeded and not timed_out,
            stdout_truncated=stdout_cap.truncated,
            stderr_truncated=stderr_cap.truncated,
        )
        logger.debug(
            f"{name} process finished",
            extra={
                "context_id": context_id,
                "exit_code": result.exit_code,
                "execution_time_ms": result.execution_time_ms,
                "timed_out": result.timed_out,
                "memory_exceeded": result.memory_exceeded,
            },
        )
        return result

    async def _spawn(
        self,
        argv: list[str],
        *,
        workdir: Path,
        env: dict[str, str],
        limits: ResourceLimits,
        context_id: str,
        name: str,
    ) -> ProcessWrapper:
        """Start the child in its own session with limits applied.

        fork/exec failing with EAGAIN, EMFILE, ENFILE or ENOMEM is retried
        with jittered backoff.

        Raises:
            SandboxInternalError: Spawn failed (after retries for transient errnos)
        """
        proc: ProcessWrapper | None = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(SPAWN_MAX_ATTEMPTS),
                wait=wait_random_exponential(min=SPAWN_RETRY_MIN_SECONDS, max=SPAWN_RETRY_MAX_SECONDS),
                retry=retry_if_exception(_is_transient_spawn_error),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    proc = ProcessWrapper(
                        await asyncio.create_subprocess_exec(
                            *argv,
                            stdin=asyncio.subprocess.PIPE,
                            stdout=asyncio.subprocess.PIPE,
                            stderr=asyncio.subprocess.PIPE,
                            cwd=workdir,
                            env=env,
                            start_new_session=True,
                            preexec_fn=build_preexec(limits),
                        )
                    )
        except OSError as e:
            raise SandboxInternalError(
                f"Failed to spawn {name} process: {e}",
                context={"context_id": context_id, "command": argv, "errno": e.errno},
            ) from e
        if proc is None:
            raise SandboxInternalError(f"Failed to spawn {name} process", context={"context_id": context_id})
        return proc

    async def _collect(
        self,
        stdout_task: asyncio.Task[CapturedStream],
        stderr_task: asyncio.Task[CapturedStream],
        context_id: str,
    ) -> tuple[CapturedStream, CapturedStream]:
        """Await both readers; a pipe still open after the tree kill yields what was read so far."""
        try:
            async with asyncio.timeout(PROCESS_KILL_TIMEOUT_SECONDS):
                return await stdout_task, await stderr_task
        except TimeoutError:
            logger.warning("Output pipes still open after process tree kill", extra={"context_id": context_id})
            empty = CapturedStream(b"", truncated=False, total_bytes=0)
            stdout = stdout_task.result() if stdout_task.done() else empty
            stderr = stderr_task.result() if stderr_task.done() else empty
            return stdout, stderr
