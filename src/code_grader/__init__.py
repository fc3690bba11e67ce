"""code-grader: Compile, run and grade untrusted code against test cases.

Submissions run as sandboxed child processes (own process group, rlimits,
memory watchdog, disposable workspace, no network where the host allows
it) under a fixed-size FIFO worker pool.

Quick Start:
    ```python
    from code_grader import ExecutionRequest, Scheduler, TestCase

    async with Scheduler() as scheduler:
        outcomes = await scheduler.execute_code(
            ExecutionRequest(
                code="print(input())",
                language="python",
                test_cases=[TestCase(input="Hello World", expected_output="Hello World")],
            )
        )
        print(outcomes[0].success)  # True
    ```

With Configuration:
    ```python
    from code_grader import Scheduler, SchedulerConfig

    config = SchedulerConfig(
        max_concurrent_processes=16,
        output_normalization="trim",
    )
    async with Scheduler(config) as scheduler:
        report = await scheduler.grade(request)
        print(report.score)
    ```

Supported languages: python, javascript, java, cpp, c (toolchains must be
installed on the host; see ``code-grader languages``).
"""

from code_grader.admission import PoolSnapshot, WorkerPool
from code_grader.aggregator import aggregate
from code_grader.config import SchedulerConfig
from code_grader.exceptions import (
    CodeValidationError,
    CompileError,
    GraderError,
    InputValidationError,
    InternalError,
    LimitValidationError,
    NotSupportedError,
    PermanentError,
    SandboxInternalError,
    ServiceBusyError,
    TestCaseValidationError,
    TransientError,
    UnsupportedLanguageError,
    ValidationError,
)
from code_grader.health import HealthMonitor, HealthReport
from code_grader.models import (
    ExecutionOutcome,
    ExecutionRequest,
    GradingReport,
    LanguageSpec,
    OutputNormalization,
    RunResult,
    TestCase,
    Verdict,
)
from code_grader.scheduler import Scheduler

__all__ = [
    "CodeValidationError",
    "CompileError",
    "ExecutionOutcome",
    "ExecutionRequest",
    "GraderError",
    "GradingReport",
    "HealthMonitor",
    "HealthReport",
    "InputValidationError",
    "InternalError",
    "LanguageSpec",
    "LimitValidationError",
    "NotSupportedError",
    "OutputNormalization",
    "PermanentError",
    "PoolSnapshot",
    "RunResult",
    "SandboxInternalError",
    "Scheduler",
    "SchedulerConfig",
    "ServiceBusyError",
    "TestCase",
    "TestCaseValidationError",
    "TransientError",
    "UnsupportedLanguageError",
    "ValidationError",
    "Verdict",
    "WorkerPool",
    "aggregate",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("code-grader")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
