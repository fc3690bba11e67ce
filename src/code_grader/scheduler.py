"""Execution scheduler: the grader's public entry point.

Request flow (grade / execute_code):
    1. validate()             ValidationError before any resource is used
    2. admission              ServiceBusyError when the pool queue is full
    3. workspace              fresh directory holding the submitted source
    4. compile (if needed)    one pool slot, compile_timeout_seconds
                              failure -> every test case gets compile_error
    5. test cases             concurrent (per-request cap), one pool slot and
                              one workspace copy each
    6. aggregate              outcomes in input order

Infrastructure failures (SandboxInternalError, ServiceBusyError) propagate
to the caller; they are never folded into outcomes.

Example:
    ```python
    async with Scheduler() as scheduler:
        report = await scheduler.grade(
            ExecutionRequest(
                code="print(input())",
                language="python",
                test_cases=[TestCase(input="hi", expected_output="hi")],
            )
        )
        report.accepted  # True
    ```
"""

from __future__ import annotations

import asyncio
from typing import Self
from uuid import uuid4

from code_grader import constants
from code_grader._logging import get_logger
from code_grader.admission import PoolSnapshot, WorkerPool
from code_grader.aggregator import aggregate
from code_grader.config import SchedulerConfig
from code_grader.exceptions import (
    CodeValidationError,
    CompileError,
    LimitValidationError,
    TestCaseValidationError,
)
from code_grader.harness import (
    crash_message,
    execute_in_copy,
    limits_for,
    program_paths,
    run_test_case,
    truncate_text,
)
from code_grader.health import HealthMonitor
from code_grader.languages import LanguageRegistry, get_registry
from code_grader.models import (
    ExecutionOutcome,
    ExecutionRequest,
    GradingReport,
    LanguageSpec,
    RunResult,
    TestCase,
    Verdict,
)
from code_grader.sandbox import ResourceLimits, SandboxResult, SandboxRunner
from code_grader.workspace import Workspace

logger = get_logger(__name__)


def _is_utf8(text: str) -> bool:
    """Whether text encodes as strict UTF-8 (JSON allows lone surrogates, UTF-8 does not)."""
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class Scheduler:
    """Grades submissions against test cases in sandboxed processes.

    Thread-safety: use from a single event loop. Usable with or without
    ``async with``; the context manager only runs startup checks and stops
    the background health monitor.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        runner: SandboxRunner | None = None,
        registry: LanguageRegistry | None = None,
    ) -> None:
        """
        Args:
            config: Scheduler configuration (defaults if None)
            runner: Sandbox runner (one built from config if None)
            registry: Language registry (process-wide registry if None)
        """
        self.config = config or SchedulerConfig()
        self._registry = registry or get_registry()
        self._runner = runner or SandboxRunner(
            isolate_network=self.config.isolate_network,
            isolate_filesystem=self.config.isolate_filesystem,
        )
        self._pool = WorkerPool(
            self.config.max_concurrent_processes,
            max_queue_depth=self.config.max_queue_depth,
            queue_timeout_seconds=self.config.queue_timeout_seconds,
        )
        self._workspace_root = self.config.get_workspace_root()
        self.health = HealthMonitor(self, language=self.config.health_check_language)

    async def __aenter__(self) -> Self:
        missing = self._registry.missing_toolchains()
        if missing:
            logger.warning("Toolchains missing, affected languages will fail", extra={"missing": missing})
        network = await self._runner.network_isolation_available()
        filesystem = await self._runner.filesystem_isolation_available()
        logger.info(
            "Scheduler started",
            extra={
                "max_concurrent_processes": self.config.max_concurrent_processes,
                "workspace_root": str(self._workspace_root),
                "network_isolation": network,
                "filesystem_isolation": filesystem,
            },
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.health.stop()
        logger.info("Scheduler stopped")

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, request: ExecutionRequest) -> LanguageSpec:
        """Check a request before any sandbox resource is used.

        Returns:
            The resolved language

        Raises:
            CodeValidationError: Empty, oversized, NUL-containing or non-UTF-8 code
            UnsupportedLanguageError: Unknown language
            TestCaseValidationError: No test cases, or an input that is not UTF-8 text
            LimitValidationError: Non-positive or out-of-range limits
        """
        self._check_code(request.code)
        spec = self._registry.resolve(request.language)
        if not request.test_cases:
            raise TestCaseValidationError("At least one test case is required")
        for index, test_case in enumerate(request.test_cases):
            if not _is_utf8(test_case.input):
                raise TestCaseValidationError(
                    f"Test case {index} input is not valid UTF-8 text",
                    context={"index": index},
                )
        self._check_limits(request.time_limit_seconds, request.memory_limit_mb)
        return spec

    @staticmethod
    def _check_code(code: str) -> None:
        if not code.strip():
            raise CodeValidationError("Code must not be empty")
        if "\x00" in code:
            raise CodeValidationError("Code must not contain NUL bytes")
        if not _is_utf8(code):
            raise CodeValidationError("Code must be valid UTF-8 text (lone surrogates are not allowed)")
        size = len(code.encode("utf-8"))
        if size > constants.MAX_CODE_SIZE:
            raise CodeValidationError(
                f"Code exceeds {constants.MAX_CODE_SIZE} bytes",
                context={"size": size, "max_size": constants.MAX_CODE_SIZE},
            )

    def _check_limits(self, time_limit_seconds: float, memory_limit_mb: int) -> None:
        # Written as "not within" so NaN is rejected too
        if not 0 < time_limit_seconds <= self.config.max_time_limit_seconds:
            raise LimitValidationError(
                f"Time limit must be in (0, {self.config.max_time_limit_seconds}] seconds",
                context={"time_limit_seconds": time_limit_seconds},
            )
        if not 0 < memory_limit_mb <= self.config.max_memory_limit_mb:
            raise LimitValidationError(
                f"Memory limit must be in (0, {self.config.max_memory_limit_mb}] MB",
                context={"memory_limit_mb": memory_limit_mb},
            )

    # -------------------------------------------------------------------------
    # Grading
    # -------------------------------------------------------------------------

    async def execute_code(self, request: ExecutionRequest) -> list[ExecutionOutcome]:
        """Grade a request; one outcome per test case, in input order."""
        report = await self.grade(request)
        return report.outcomes

    async def grade(self, request: ExecutionRequest) -> GradingReport:
        """Grade a request and fold the outcomes into a report.

        Raises:
            ValidationError: Malformed request
            ServiceBusyError: Pool queue saturated or slot wait timed out
            SandboxInternalError: A sandboxed process could not be started
        """
        spec = self.validate(request)
        execution_id = uuid4().hex[:12]
        self._pool.reject_if_saturated(execution_id)
        log_extra = {"execution_id": execution_id, "language": spec.id, "test_count": len(request.test_cases)}
        logger.info("Grading started", extra=log_extra)

        async with Workspace(self._workspace_root, execution_id) as program:
            await program.write_file(spec.source_filename, request.code)
            try:
                await self._compile(spec, program, execution_id)
            except CompileError as e:
                logger.info("Compilation failed", extra={**log_extra, "exit_code": e.exit_code})
                outcomes = [
                    ExecutionOutcome(
                        success=False,
                        output="",
                        error=e.stderr,
                        execution_time_ms=0,
                        exit_code=e.exit_code,
                        verdict=Verdict.COMPILE_ERROR,
                    )
                    for _ in request.test_cases
                ]
                return aggregate(outcomes, compile_error=e.stderr)

            outcomes = await self._run_test_cases(spec, program, request, execution_id)

        report = aggregate(outcomes)
        logger.info(
            "Grading finished",
            extra={
                **log_extra,
                "passed": report.passed_count,
                "total_execution_time_ms": report.total_execution_time_ms,
            },
        )
        return report

    async def _compile(self, spec: LanguageSpec, program: Workspace, execution_id: str) -> SandboxResult | None:
        """Compile the program in place (no-op for interpreted languages).

        Returns:
            The compiler's result, None when the language needs no compile step

        Raises:
            CompileError: Non-zero compiler exit or compile timeout
        """
        if not spec.requires_compilation:
            return None
        source, binary = program_paths(spec, program.path)
        argv = spec.render_compile(
            source=source,
            binary=binary,
            workdir=str(program.path),
            memory_mb=constants.COMPILE_MEMORY_LIMIT_MB,
        )
        limits = ResourceLimits(
            time_limit_seconds=self.config.compile_timeout_seconds,
            memory_limit_mb=constants.COMPILE_MEMORY_LIMIT_MB,
            memory_rlimit=False,
        )
        async with self._pool.slot(f"{execution_id}:compile"):
            result = await self._runner.run(
                argv, workdir=program.path, limits=limits, context_id=execution_id, name="compile"
            )

        if result.timed_out:
            raise CompileError(
                constants.COMPILE_TIMEOUT_MESSAGE,
                stderr=constants.COMPILE_TIMEOUT_MESSAGE,
                exit_code=-1,
                context={"execution_id": execution_id, "language": spec.id},
            )
        if result.exit_code != 0 or result.memory_exceeded:
            diagnostics = result.stderr.strip() or result.stdout.strip() or crash_message(result.exit_code)
            raise CompileError(
                "Compilation failed",
                stderr=truncate_text(diagnostics, self.config.max_error_length),
                exit_code=result.exit_code,
                context={"execution_id": execution_id, "language": spec.id},
            )
        return result

    async def _run_test_cases(
        self,
        spec: LanguageSpec,
        program: Workspace,
        request: ExecutionRequest,
        execution_id: str,
    ) -> list[ExecutionOutcome]:
        per_request = asyncio.Semaphore(self.config.max_concurrent_tests_per_request)

        async def _run_one(index: int, test_case: TestCase) -> ExecutionOutcome:
            async with per_request, self._pool.slot(f"{execution_id}:{index}"):
                return await run_test_case(
                    self._runner,
                    spec,
                    program,
                    test_case,
                    time_limit_seconds=request.time_limit_seconds,
                    memory_limit_mb=request.memory_limit_mb,
                    mode=self.config.output_normalization,
                    max_error_length=self.config.max_error_length,
                    context_id=f"{execution_id}:{index}",
                )

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(_run_one(i, tc)) for i, tc in enumerate(request.test_cases)]
        except ExceptionGroup as eg:
            # Siblings are cancelled; surface the first infrastructure error as-is
            raise eg.exceptions[0] from None
        return [task.result() for task in tasks]

    # -------------------------------------------------------------------------
    # Ad-hoc run
    # -------------------------------------------------------------------------

    async def run_code(
        self,
        code: str,
        language: str,
        stdin: str = "",
        time_limit_seconds: float | None = None,
        memory_limit_mb: int | None = None,
    ) -> RunResult:
        """Compile (if needed) and run code once, without grading.

        A compile failure is reported through RunResult.compile_output and
        the compiler's exit code, not raised.

        Raises:
            ValidationError: Malformed code, language, input or limits
            ServiceBusyError: Pool queue saturated or slot wait timed out
            SandboxInternalError: The process could not be started
        """
        time_limit = time_limit_seconds if time_limit_seconds is not None else self.config.default_time_limit_seconds
        memory_limit = memory_limit_mb if memory_limit_mb is not None else self.config.default_memory_limit_mb
        self._check_code(code)
        spec = self._registry.resolve(language)
        self._check_limits(time_limit, memory_limit)
        if not _is_utf8(stdin):
            raise TestCaseValidationError("Input is not valid UTF-8 text")

        execution_id = uuid4().hex[:12]
        self._pool.reject_if_saturated(execution_id)

        async with Workspace(self._workspace_root, execution_id) as program:
            await program.write_file(spec.source_filename, code)
            try:
                compiled = await self._compile(spec, program, execution_id)
            except CompileError as e:
                return RunResult(
                    stdout="",
                    stderr=e.stderr,
                    exit_code=e.exit_code,
                    execution_time_ms=0,
                    timed_out=e.exit_code == -1,
                    compile_output=e.stderr,
                    compile_failed=True,
                )

            async with self._pool.slot(f"{execution_id}:run"):
                result = await execute_in_copy(
                    self._runner,
                    spec,
                    program,
                    stdin=stdin,
                    limits=limits_for(spec, time_limit, memory_limit),
                    context_id=execution_id,
                )

        return RunResult(
            stdout=result.stdout + (constants.TRUNCATION_MARKER if result.stdout_truncated else ""),
            stderr=result.stderr + (constants.TRUNCATION_MARKER if result.stderr_truncated else ""),
            exit_code=result.exit_code,
            execution_time_ms=result.execution_time_ms,
            timed_out=result.timed_out,
            memory_exceeded=result.memory_exceeded,
            compile_output=(compiled.stderr or None) if compiled is not None else None,
        )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def health_check(self) -> bool:
        """Run the hello-world self-test; never raises."""
        report = await self.health.check()
        return report.healthy

    def list_supported_languages(self) -> list[LanguageSpec]:
        """Languages this scheduler accepts, with their starter templates."""
        return self._registry.list_supported_languages()

    @property
    def registry(self) -> LanguageRegistry:
        """Language registry used to resolve requests."""
        return self._registry

    def pool_snapshot(self) -> PoolSnapshot:
        """Current worker pool occupancy."""
        return self._pool.snapshot()
