"""Test harness: run one test case and classify what happened.

Classification order (first match wins):
    1. timed out          -> TIME_LIMIT_EXCEEDED, error "Time limit exceeded"
    2. memory exceeded    -> MEMORY_LIMIT_EXCEEDED, error "Memory limit exceeded"
    3. exit code != 0     -> RUNTIME_ERROR, error = stderr (bounded)
    4. output mismatch    -> WRONG_ANSWER, error ""
    5. otherwise          -> ACCEPTED
"""

from __future__ import annotations

import signal
from pathlib import Path

from code_grader import constants
from code_grader._logging import get_logger
from code_grader.languages import BINARY_NAME
from code_grader.models import ExecutionOutcome, LanguageSpec, OutputNormalization, TestCase, Verdict
from code_grader.sandbox import ResourceLimits, SandboxResult, SandboxRunner
from code_grader.workspace import Workspace

logger = get_logger(__name__)


def normalize_output(text: str, mode: OutputNormalization = OutputNormalization.TRAILING_WHITESPACE) -> str:
    """Normalize program output for comparison.

    Args:
        text: Raw decoded output
        mode: Normalization policy

    Returns:
        Normalized text (unchanged for EXACT)
    """
    if mode == OutputNormalization.EXACT:
        return text
    unified = text.replace("\r\n", "\n").replace("\r", "\n")
    if mode == OutputNormalization.TRIM:
        return unified.strip()
    lines = [line.rstrip() for line in unified.split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def outputs_match(
    actual: str,
    expected: str,
    mode: OutputNormalization = OutputNormalization.TRAILING_WHITESPACE,
) -> bool:
    """Whether actual output is accepted against expected under mode."""
    return normalize_output(actual, mode) == normalize_output(expected, mode)


def truncate_text(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut."""
    if len(text) <= max_length:
        return text
    keep = max(max_length - len(constants.TRUNCATION_MARKER), 0)
    return text[:keep] + constants.TRUNCATION_MARKER


def crash_message(exit_code: int) -> str:
    """Error text for a non-zero exit that wrote nothing to stderr."""
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = str(-exit_code)
        return f"Process terminated by signal {name}"
    return f"Process exited with code {exit_code}"


def classify(
    result: SandboxResult,
    test_case: TestCase,
    mode: OutputNormalization = OutputNormalization.TRAILING_WHITESPACE,
    max_error_length: int = constants.MAX_ERROR_LENGTH,
) -> ExecutionOutcome:
    """Fold a sandbox result into a test-case outcome."""
    output = normalize_output(result.stdout, mode)
    common = {
        "output": output,
        "execution_time_ms": result.execution_time_ms,
        "exit_code": result.exit_code,
    }

    if result.timed_out:
        return ExecutionOutcome(
            success=False,
            error=constants.TIME_LIMIT_EXCEEDED_MESSAGE,
            verdict=Verdict.TIME_LIMIT_EXCEEDED,
            **common,
        )
    if result.memory_exceeded:
        return ExecutionOutcome(
            success=False,
            error=constants.MEMORY_LIMIT_EXCEEDED_MESSAGE,
            verdict=Verdict.MEMORY_LIMIT_EXCEEDED,
            **common,
        )
    if result.exit_code != 0:
        error = result.stderr.strip() or crash_message(result.exit_code)
        return ExecutionOutcome(
            success=False,
            error=truncate_text(error, max_error_length),
            verdict=Verdict.RUNTIME_ERROR,
            **common,
        )
    if output != normalize_output(test_case.expected_output, mode):
        return ExecutionOutcome(success=False, error="", verdict=Verdict.WRONG_ANSWER, **common)
    return ExecutionOutcome(success=True, error="", verdict=Verdict.ACCEPTED, **common)


def program_paths(spec: LanguageSpec, workdir: Path) -> tuple[str, str]:
    """(source, binary) absolute paths of a program inside workdir."""
    return str(workdir / spec.source_filename), str(workdir / BINARY_NAME)


def limits_for(spec: LanguageSpec, time_limit_seconds: float, memory_limit_mb: int) -> ResourceLimits:
    """Run-step limits for a language."""
    return ResourceLimits(
        time_limit_seconds=time_limit_seconds,
        memory_limit_mb=memory_limit_mb,
        memory_rlimit=spec.memory_rlimit,
        runtime_overhead_mb=spec.runtime_overhead_mb,
        memory_error_markers=spec.memory_error_markers,
    )


async def execute_in_copy(
    runner: SandboxRunner,
    spec: LanguageSpec,
    program: Workspace,
    *,
    stdin: str,
    limits: ResourceLimits,
    context_id: str,
) -> SandboxResult:
    """Run the program once in a fresh copy of its workspace."""
    async with Workspace(program.path.parent, context_id, seed=program) as ws:
        source, binary = program_paths(spec, ws.path)
        argv = spec.render_run(
            source=source,
            binary=binary,
            workdir=str(ws.path),
            memory_mb=limits.memory_limit_mb,
        )
        return await runner.run(argv, workdir=ws.path, limits=limits, stdin=stdin, context_id=context_id)


async def run_test_case(
    runner: SandboxRunner,
    spec: LanguageSpec,
    program: Workspace,
    test_case: TestCase,
    *,
    time_limit_seconds: float,
    memory_limit_mb: int,
    mode: OutputNormalization = OutputNormalization.TRAILING_WHITESPACE,
    max_error_length: int = constants.MAX_ERROR_LENGTH,
    context_id: str = "",
) -> ExecutionOutcome:
    """Run one test case in its own workspace and classify it.

    Args:
        runner: Shared sandbox runner
        spec: Language of the program
        program: Workspace holding the source (and compiled artifact)
        test_case: Input and expected output
        time_limit_seconds: Wall-clock limit of the run
        memory_limit_mb: Memory ceiling of the run
        mode: Output normalization policy
        max_error_length: Characters of stderr kept in the error
        context_id: Log correlation id

    Raises:
        SandboxInternalError: The run could not be started
    """
    result = await execute_in_copy(
        runner,
        spec,
        program,
        stdin=test_case.input,
        limits=limits_for(spec, time_limit_seconds, memory_limit_mb),
        context_id=context_id,
    )
    outcome = classify(result, test_case, mode, max_error_length)
    logger.debug(
        "test case classified",
        extra={
            "context_id": context_id,
            "verdict": outcome.verdict.value,
            "execution_time_ms": outcome.execution_time_ms,
        },
    )
    return outcome

