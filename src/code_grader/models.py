"""Data models for code-grader.

Request/outcome models use the platform's camelCase wire names as aliases
(``testCases``, ``expectedOutput``, ``executionTimeMs``...) and accept the
snake_case field names as well. Serialize with ``model_dump(by_alias=True)``
to produce the wire shape.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field

from code_grader import constants


class Verdict(str, Enum):
    """Per-test-case classification."""

    ACCEPTED = "accepted"
    WRONG_ANSWER = "wrong_answer"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    COMPILE_ERROR = "compile_error"


class OutputNormalization(str, Enum):
    """How actual and expected output are normalized before comparison."""

    TRAILING_WHITESPACE = "trailing_whitespace"
    """Unify line endings, strip trailing whitespace per line, drop trailing blank lines."""

    TRIM = "trim"
    """Unify line endings and strip whitespace at both ends of the whole output."""

    EXACT = "exact"
    """Byte-for-byte comparison of the decoded text."""


_WIRE_CONFIG = ConfigDict(frozen=True, populate_by_name=True)


class TestCase(BaseModel):
    """One input/expected-output pair."""

    __test__ = False  # not a pytest test class

    model_config = _WIRE_CONFIG

    input: str = Field(default="", description="Text fed to the program's stdin")
    expected_output: str = Field(alias="expectedOutput", description="Expected stdout")
    description: str | None = Field(default=None, description="Optional label shown to users")


class ExecutionRequest(BaseModel):
    """One grading job.

    Limits are only type-checked here; range validation (positive, bounded by
    configuration) happens in Scheduler.validate() so that it raises the
    grader's ValidationError before any process is spawned.
    """

    model_config = _WIRE_CONFIG

    code: str
    language: str
    test_cases: list[TestCase] = Field(default_factory=list, alias="testCases")
    time_limit_seconds: float = Field(
        default=constants.DEFAULT_TIME_LIMIT_SECONDS,
        alias="timeLimitSeconds",
        description="Per-test-case wall-clock limit",
    )
    memory_limit_mb: int = Field(
        default=constants.DEFAULT_MEMORY_LIMIT_MB,
        alias="memoryLimitMB",
        description="Per-test-case memory ceiling",
    )


class ExecutionOutcome(BaseModel):
    """Result of one test case. Outcomes are ordered like the request's test cases."""

    model_config = _WIRE_CONFIG

    success: bool
    output: str = ""
    error: str = Field(default="", description='"" for accepted and wrong-answer outcomes')
    execution_time_ms: int = Field(default=0, ge=0, alias="executionTimeMs")
    exit_code: int = Field(default=0, alias="exitCode")
    verdict: Verdict


class GradingReport(BaseModel):
    """Submission-level result folded from the ordered outcomes."""

    model_config = _WIRE_CONFIG

    outcomes: list[ExecutionOutcome]
    passed_count: int = Field(alias="passedCount")
    total_count: int = Field(alias="totalCount")
    total_execution_time_ms: int = Field(alias="totalExecutionTimeMs")
    compile_error: str | None = Field(default=None, alias="compileError")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def score(self) -> float:
        """Percentage of passed test cases (0 when there are none)."""
        if self.total_count == 0:
            return 0.0
        return self.passed_count / self.total_count * 100

    @property
    def accepted(self) -> bool:
        """Whether every test case passed."""
        return self.total_count > 0 and self.passed_count == self.total_count


class RunResult(BaseModel):
    """Result of an ad-hoc run (no expected output, no grading)."""

    model_config = _WIRE_CONFIG

    stdout: str = Field(max_length=constants.MAX_STDOUT_SIZE + len(constants.TRUNCATION_MARKER))
    stderr: str = Field(max_length=constants.MAX_STDERR_SIZE + len(constants.TRUNCATION_MARKER))
    exit_code: int = Field(alias="exitCode")
    execution_time_ms: int = Field(ge=0, alias="executionTimeMs")
    timed_out: bool = Field(default=False, alias="timedOut")
    memory_exceeded: bool = Field(default=False, alias="memoryExceeded")
    compile_output: str | None = Field(default=None, alias="compileOutput")
    compile_failed: bool = Field(default=False, alias="compileFailed")


class LanguageSpec(BaseModel):
    """Toolchain description for one language.

    Commands are argument templates. Placeholders:
        {source}     absolute path of the source file
        {binary}     absolute path of the compiled artifact
        {workdir}    absolute path of the execution workspace
        {memory_mb}  memory limit of the run in MB
    """

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    version: str
    file_extension: str
    source_filename: str
    compile_command: tuple[str, ...] | None = None
    run_command: tuple[str, ...]
    template: str
    memory_rlimit: bool = Field(
        default=True,
        description="Apply RLIMIT_AS (False for runtimes that reserve large address spaces)",
    )
    runtime_overhead_mb: int = Field(
        default=0,
        ge=0,
        description="Resident memory of the runtime itself, allowed on top of the limit",
    )
    memory_error_markers: tuple[str, ...] = Field(
        default=(),
        description="stderr substrings that mean the program ran out of memory",
    )
    hello_world: str = Field(description='Program printing "Hello World", used by the health check')

    @property
    def requires_compilation(self) -> bool:
        """Whether a compile step produces an artifact before runs."""
        return self.compile_command is not None

    def render_compile(self, *, source: str, binary: str, workdir: str, memory_mb: int) -> list[str]:
        """Compile argv for one workspace."""
        if self.compile_command is None:
            return []
        return _render(self.compile_command, source=source, binary=binary, workdir=workdir, memory_mb=memory_mb)

    def render_run(self, *, source: str, binary: str, workdir: str, memory_mb: int) -> list[str]:
        """Run argv for one workspace."""
        return _render(self.run_command, source=source, binary=binary, workdir=workdir, memory_mb=memory_mb)


def _render(template: tuple[str, ...], **values: object) -> list[str]:
    return [part.format(**values) for part in template]
