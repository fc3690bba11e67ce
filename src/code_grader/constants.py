"""Constants for code-grader configuration and limits."""

from typing import Final

# ============================================================================
# Request Defaults and Bounds
# ============================================================================

DEFAULT_TIME_LIMIT_SECONDS: Final[int] = 5
"""Per-test-case wall-clock limit when the caller omits one."""

DEFAULT_MEMORY_LIMIT_MB: Final[int] = 64
"""Per-test-case memory ceiling when the caller omits one."""

MAX_TIME_LIMIT_SECONDS: Final[int] = 30
"""Largest per-test-case time limit a request may ask for."""

MAX_MEMORY_LIMIT_MB: Final[int] = 1024
"""Largest per-test-case memory ceiling a request may ask for."""

DEFAULT_COMPILE_TIMEOUT_SECONDS: Final[int] = 30
"""Wall-clock limit for the compile step (independent of the run limit)."""

COMPILE_MEMORY_LIMIT_MB: Final[int] = 1024
"""Memory ceiling for compilers (javac and g++ need far more than test runs)."""

MAX_CODE_SIZE: Final[int] = 1024 * 1024  # 1MB
"""Maximum size in characters of submitted source code."""

MAX_ERROR_LENGTH: Final[int] = 4096
"""Maximum characters of stderr carried in an outcome's error field."""

TRUNCATION_MARKER: Final[str] = "\n... (truncated)"
"""Suffix appended to text cut at a size bound."""

# ============================================================================
# Worker Pool
# ============================================================================

DEFAULT_MAX_CONCURRENT_PROCESSES: Final[int] = 5
"""Global number of simultaneously sandboxed child processes."""

DEFAULT_MAX_CONCURRENT_TESTS_PER_REQUEST: Final[int] = 4
"""Test cases of one request allowed to run at the same time."""

DEFAULT_MAX_QUEUE_DEPTH: Final[int] = 100
"""Waiters allowed in the pool's FIFO queue before new requests are rejected."""

DEFAULT_QUEUE_TIMEOUT_SECONDS: Final[float] = 300.0
"""Maximum wait for a pool slot before ServiceBusyError."""

# ============================================================================
# Sandbox
# ============================================================================

MAX_STDOUT_SIZE: Final[int] = 1_000_000  # 1MB
"""Maximum stdout capture size in bytes."""

MAX_STDERR_SIZE: Final[int] = 100_000  # 100KB
"""Maximum stderr capture size in bytes."""

STREAM_READ_CHUNK_SIZE: Final[int] = 64 * 1024
"""Bytes read per pipe read call."""

MAX_OUTPUT_FILE_SIZE_BYTES: Final[int] = 16 * 1024 * 1024
"""RLIMIT_FSIZE for sandboxed processes (files written inside the workspace)."""

CPU_LIMIT_MARGIN_SECONDS: Final[int] = 1
"""RLIMIT_CPU is the wall-clock limit plus this margin (backstop only)."""

MEMORY_POLL_INTERVAL_SECONDS: Final[float] = 0.02
"""Interval between RSS samples of the sandboxed process tree."""

LEADER_EXIT_POLL_SECONDS: Final[float] = 0.01
"""Poll interval for detecting the exit of a process whose pipes are still held open."""

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 0.5
"""Wait after SIGTERM before escalating to SIGKILL during cleanup."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping."""

STDIN_WRITE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Upper bound for feeding stdin to a program that doesn't read it."""

SPAWN_MAX_ATTEMPTS: Final[int] = 3
"""Attempts to start a process when fork/exec fails with a transient errno."""

SPAWN_RETRY_MIN_SECONDS: Final[float] = 0.05
SPAWN_RETRY_MAX_SECONDS: Final[float] = 0.5
"""Jittered backoff bounds between spawn attempts."""

WORKSPACE_DIR_PREFIX: Final[str] = "exec-"
"""Prefix of per-execution workspace directory names."""

WORKSPACE_ROOT_MODE: Final[int] = 0o311
"""Workspace root: the owner can create and enter entries but not list them.

Sandboxed processes run as the grader's uid, so a readable root would let a
submission enumerate concurrent workspaces.
"""

NAMESPACE_PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Upper bound for the one-off unshare capability probes."""

SANDBOX_PATH: Final[str] = "/usr/local/bin:/usr/bin:/bin"
"""PATH exported to sandboxed processes."""

# ============================================================================
# Health Monitor
# ============================================================================

DEFAULT_HEALTH_CHECK_LANGUAGE: Final[str] = "python"
"""Language used by the self-test program."""

DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS: Final[float] = 60.0
"""Interval between periodic self-tests."""

HEALTH_CHECK_TIME_LIMIT_SECONDS: Final[int] = 5
"""Time limit of the self-test program."""

HEALTH_CHECK_MEMORY_LIMIT_MB: Final[int] = 256
"""Memory ceiling of the self-test program."""

HEALTH_CHECK_EXPECTED_OUTPUT: Final[str] = "Hello World"
"""Expected stdout of the self-test program."""

# ============================================================================
# Verdict Messages
# ============================================================================

TIME_LIMIT_EXCEEDED_MESSAGE: Final[str] = "Time limit exceeded"
MEMORY_LIMIT_EXCEEDED_MESSAGE: Final[str] = "Memory limit exceeded"
COMPILE_TIMEOUT_MESSAGE: Final[str] = "Compilation timed out"

# ============================================================================
# Memory Accounting
# ============================================================================

VIRTUAL_MEMORY_MULTIPLIER: Final[int] = 4
"""RLIMIT_AS is the memory limit times this factor (address space reservations
of the runtime exceed resident usage). Resident usage is enforced separately."""
