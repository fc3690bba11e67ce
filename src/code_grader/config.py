"""Scheduler configuration for code-grader.

SchedulerConfig holds every tunable of the grading engine: worker pool
capacity, queue bounds, compile/run limits, output comparison policy and
the health self-test.

Example:
    ```python
    from code_grader import Scheduler, SchedulerConfig

    # Default configuration
    async with Scheduler() as scheduler:
        outcomes = await scheduler.execute_code(request)

    # Custom configuration
    config = SchedulerConfig(
        max_concurrent_processes=16,
        output_normalization="trim",
    )
    async with Scheduler(config) as scheduler:
        report = await scheduler.grade(request)
    ```
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from code_grader import constants
from code_grader.models import OutputNormalization
from code_grader.settings import get_settings


class SchedulerConfig(BaseModel):
    """Configuration for Scheduler.

    All fields have sensible defaults for local development. Production
    deployments should size max_concurrent_processes to the host's cores.

    Attributes:
        max_concurrent_processes: Global worker pool size, i.e. the maximum
            number of sandboxed child processes alive at once. Default: 5.
        max_concurrent_tests_per_request: Test cases of one request that may
            run concurrently. Default: 4.
        max_queue_depth: Waiters allowed in the pool's FIFO queue. A request
            arriving when the queue is this deep fails with ServiceBusyError.
            Default: 100.
        queue_timeout_seconds: Maximum wait for a pool slot. Default: 300.
        compile_timeout_seconds: Compile step deadline. Default: 30.
        default_time_limit_seconds / default_memory_limit_mb: Limits used by
            run_code() and the CLI when none are given. Default: 5s / 64MB.
        max_time_limit_seconds / max_memory_limit_mb: Upper bounds a request
            may ask for. Default: 30s / 1024MB.
        output_normalization: Output comparison policy. Default:
            trailing_whitespace.
        max_error_length: Characters of stderr kept in an outcome's error.
        workspace_root: Parent of per-execution workspaces. If None, uses
            CODE_GRADER_WORKSPACE_ROOT or <tmp>/code-grader.
        isolate_network: Run sandboxed processes in a fresh network namespace
            when the host supports it. Default: True.
        isolate_filesystem: Hide concurrent workspaces behind a fresh mount
            namespace when the host supports it. Default: True.
        health_check_language: Language of the self-test. Default: python.
        health_check_interval_seconds: Period of the background self-test.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Worker pool
    max_concurrent_processes: int = Field(
        default=constants.DEFAULT_MAX_CONCURRENT_PROCESSES,
        ge=1,
        le=256,
        description="Maximum simultaneously sandboxed processes",
    )
    max_concurrent_tests_per_request: int = Field(
        default=constants.DEFAULT_MAX_CONCURRENT_TESTS_PER_REQUEST,
        ge=1,
        le=256,
        description="Concurrent test cases within one request",
    )
    max_queue_depth: int = Field(
        default=constants.DEFAULT_MAX_QUEUE_DEPTH,
        ge=0,
        description="FIFO waiters allowed before new requests are rejected",
    )
    queue_timeout_seconds: float = Field(
        default=constants.DEFAULT_QUEUE_TIMEOUT_SECONDS,
        gt=0,
        description="Maximum wait for a pool slot",
    )

    # Limits
    compile_timeout_seconds: float = Field(
        default=constants.DEFAULT_COMPILE_TIMEOUT_SECONDS,
        gt=0,
        le=600,
        description="Compile step deadline",
    )
    default_time_limit_seconds: float = Field(
        default=constants.DEFAULT_TIME_LIMIT_SECONDS,
        gt=0,
        description="Run limit when the caller omits one",
    )
    default_memory_limit_mb: int = Field(
        default=constants.DEFAULT_MEMORY_LIMIT_MB,
        gt=0,
        description="Memory ceiling when the caller omits one",
    )
    max_time_limit_seconds: float = Field(
        default=constants.MAX_TIME_LIMIT_SECONDS,
        gt=0,
        description="Largest accepted per-test time limit",
    )
    max_memory_limit_mb: int = Field(
        default=constants.MAX_MEMORY_LIMIT_MB,
        gt=0,
        description="Largest accepted per-test memory ceiling",
    )

    # Grading
    output_normalization: OutputNormalization = Field(
        default=OutputNormalization.TRAILING_WHITESPACE,
        description="Output comparison policy",
    )
    max_error_length: int = Field(
        default=constants.MAX_ERROR_LENGTH,
        ge=64,
        description="Characters of stderr kept in an outcome's error",
    )

    # Sandbox
    workspace_root: Path | None = Field(
        default=None,
        description="Parent directory of per-execution workspaces (auto if None)",
    )
    isolate_network: bool = Field(
        default=True,
        description="Deny network access via a fresh network namespace when supported",
    )
    isolate_filesystem: bool = Field(
        default=True,
        description="Hide sibling workspaces via a fresh mount namespace when supported",
    )

    # Health
    health_check_language: str = Field(
        default=constants.DEFAULT_HEALTH_CHECK_LANGUAGE,
        description="Language of the hello-world self-test",
    )
    health_check_interval_seconds: float = Field(
        default=constants.DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
        gt=0,
        description="Period of the background self-test",
    )

    @model_validator(mode="after")
    def _defaults_within_bounds(self) -> SchedulerConfig:
        if self.default_time_limit_seconds > self.max_time_limit_seconds:
            raise ValueError("default_time_limit_seconds exceeds max_time_limit_seconds")
        if self.default_memory_limit_mb > self.max_memory_limit_mb:
            raise ValueError("default_memory_limit_mb exceeds max_memory_limit_mb")
        return self

    def get_workspace_root(self) -> Path:
        """Get the workspace parent directory, resolving the default if unset.

        Detection order:
        1. Explicit workspace_root from config
        2. CODE_GRADER_WORKSPACE_ROOT environment variable
        3. <system temp dir>/code-grader

        The directory is not created here.
        """
        if self.workspace_root is not None:
            return self.workspace_root
        if (env_root := get_settings().workspace_root) is not None:
            return env_root
        return Path(tempfile.gettempdir()) / "code-grader"
