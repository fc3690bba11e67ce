"""Cross-platform OS detection and process management utilities.

Uses psutil's built-in OS detection constants for platform identification.
Provides a PID-reuse safe process wrapper with process-tree operations
(every sandboxed process runs as the leader of its own session, so the
whole tree can be signalled and measured at once).
"""

import asyncio
import contextlib
import os
import signal
from enum import Enum, auto
from functools import cache

import psutil

from code_grader.constants import LEADER_EXIT_POLL_SECONDS


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (production: rlimits, network namespaces)."""

    MACOS = auto()
    """macOS (development: rlimits only, RLIMIT_AS is not enforced)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so that tree
    inspection and signalling never hit a recycled PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        # Set once killpg finds the group empty after the leader was reaped
        self._group_gone = False

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdin(self):
        """Process stdin stream."""
        return self.async_proc.stdin

    @property
    def stdout(self):
        """Process stdout stream."""
        return self.async_proc.stdout

    @property
    def stderr(self):
        """Process stderr stream."""
        return self.async_proc.stderr

    async def wait(self) -> int:
        """Wait for process to complete and return its exit code."""
        return await self.async_proc.wait()

    async def wait_exit(self, poll_interval: float = LEADER_EXIT_POLL_SECONDS) -> int:
        """Wait for the process itself to exit and return its exit code.

        Unlike wait(), this returns even while descendants still hold the
        stdout/stderr pipes open: asyncio only resolves wait() once every pipe
        is closed, and a forked child can keep them open indefinitely.
        """
        waiter = asyncio.ensure_future(self.async_proc.wait())
        try:
            while self.async_proc.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=poll_interval)
        finally:
            if not waiter.done():
                waiter.cancel()
        return self.async_proc.returncode if self.async_proc.returncode is not None else waiter.result()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit, raising TimeoutError after timeout seconds.

        Pipes are read by the sandbox's own readers, so this never calls
        communicate().
        """
        async with asyncio.timeout(timeout):
            return await self.async_proc.wait()

    def descendants(self) -> list[psutil.Process]:
        """Snapshot of all live descendants (children, grandchildren...).

        Empty once the leader is gone: psutil resolves children by pid and
        would otherwise list the children of a process that recycled it.
        """
        if self.psutil_proc is None or not self.psutil_proc.is_running():
            return []
        try:
            return self.psutil_proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def tree_rss_bytes(self) -> int:
        """Resident memory of the process and all its descendants.

        Processes that exit while being sampled are skipped.
        """
        if self.psutil_proc is None:
            return 0
        total = 0
        for proc in [self.psutil_proc, *self.descendants()]:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                total += proc.memory_info().rss
        return total

    def group_is_ours(self) -> bool:
        """Whether killpg(pid) can only reach this process's own group.

        The kernel keeps a process group id reserved while any member lives,
        so once the leader is reaped a live process holding the same pid
        means the group emptied and the pid was recycled.
        """
        if self._group_gone or self.pid is None:
            return False
        if self.returncode is None:
            return True
        return not psutil.pid_exists(self.pid)

    def signal_tree(self, sig: signal.Signals) -> None:
        """Send sig to the process group and to every known descendant.

        The group covers children that are still in the session (including
        orphans reparented away from the leader); the psutil snapshot covers
        children that called setsid() to escape it.
        """
        stragglers = self.descendants()
        if self.group_is_ours():
            try:
                os.killpg(self.pid, sig)  # type: ignore[arg-type]
            except ProcessLookupError:
                if self.returncode is not None:
                    self._group_gone = True
            except PermissionError:
                pass
        for proc in stragglers:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.send_signal(sig)

    async def terminate_tree(self) -> None:
        """SIGTERM the whole tree without blocking the event loop."""
        await asyncio.to_thread(self.signal_tree, signal.SIGTERM)

    async def kill_tree(self) -> None:
        """SIGKILL the whole tree without blocking the event loop."""
        await asyncio.to_thread(self.signal_tree, signal.SIGKILL)
