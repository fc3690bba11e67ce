"""Command-line interface for code-grader.

Usage:
    code-grader run solution.py -i "Hello"            # Run a file once
    code-grader run -l cpp - < solution.cpp           # Run from stdin
    code-grader grade solution.java --tests tests.json
    code-grader languages
    code-grader health --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from code_grader import (
    ExecutionRequest,
    GradingReport,
    RunResult,
    Scheduler,
    SchedulerConfig,
    ServiceBusyError,
    TestCase,
    TransientError,
    ValidationError,
    __version__,
)
from code_grader._logging import configure_logging
from code_grader.languages import get_registry
from code_grader.models import Verdict

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_SANDBOX_ERROR = 125

# File extension to language mapping
EXTENSION_MAP: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".java": "java",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".c": "c",
}

_VERDICT_COLORS: dict[Verdict, str] = {
    Verdict.ACCEPTED: "green",
    Verdict.WRONG_ANSWER: "red",
    Verdict.TIME_LIMIT_EXCEEDED: "yellow",
    Verdict.MEMORY_LIMIT_EXCEEDED: "yellow",
    Verdict.RUNTIME_ERROR: "magenta",
    Verdict.COMPILE_ERROR: "magenta",
}

_test_cases_adapter = TypeAdapter(list[TestCase])


def detect_language(source: str | None) -> str | None:
    """Auto-detect language from file extension.

    Args:
        source: File path or stdin marker ("-") or inline code

    Returns:
        Detected language id or None if cannot detect
    """
    if not source or source == "-":
        return None
    path = Path(source)
    if path.suffix:
        return EXTENSION_MAP.get(path.suffix.lower())
    return None


def read_source(source: str) -> str:
    """Resolve SOURCE to code: stdin for "-", file contents for a path, else inline code."""
    if source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin.")
        code = sys.stdin.read()
    else:
        path = Path(source)
        code = path.read_text(encoding="utf-8") if path.is_file() else source
    if not code.strip():
        raise click.UsageError("Empty code provided.")
    return code


def load_test_cases(path: Path) -> list[TestCase]:
    """Load test cases from a JSON file.

    Accepts a list of ``{"input", "expectedOutput"}`` objects, or an object
    holding that list under ``testCases``.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise click.BadParameter(f"Cannot read {path}: {e}", param_hint="'--tests'") from e
    if isinstance(raw, dict):
        raw = raw.get("testCases", raw.get("test_cases"))
    try:
        return _test_cases_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise click.BadParameter(f"Invalid test cases in {path}: {e}", param_hint="'--tests'") from e


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_report(report: GradingReport) -> str:
    """Human-readable per-test breakdown plus summary line."""
    lines: list[str] = []
    if report.compile_error is not None:
        lines.append(click.style("Compilation failed", fg="magenta", bold=True))
        lines.append(report.compile_error)
    else:
        for index, outcome in enumerate(report.outcomes, start=1):
            verdict = click.style(outcome.verdict.value, fg=_VERDICT_COLORS[outcome.verdict])
            lines.append(f"  #{index:<3} {verdict:<30} {outcome.execution_time_ms}ms")
            if outcome.error:
                lines.extend(f"        {line}" for line in outcome.error.splitlines()[:5])
    summary = f"{report.passed_count}/{report.total_count} passed ({report.score:.1f}%)"
    lines.append(click.style(summary, fg="green" if report.accepted else "red", bold=True))
    return "\n".join(lines)


def _handle_grader_error(e: ValidationError | TransientError) -> int:
    """Print a grader error and map it to an exit code."""
    if isinstance(e, ValidationError):
        click.echo(format_error("Invalid request", e.message), err=True)
        return EXIT_CLI_ERROR
    if isinstance(e, ServiceBusyError):
        click.echo(
            format_error(
                "Grader busy",
                e.message,
                ["Retry later", "Raise max_queue_depth or max_concurrent_processes"],
            ),
            err=True,
        )
        return EXIT_SANDBOX_ERROR
    click.echo(
        format_error(
            "Sandbox error",
            e.message,
            ["Check that the language toolchain is installed: code-grader languages"],
        ),
        err=True,
    )
    return EXIT_SANDBOX_ERROR


async def _run(code: str, language: str, stdin: str, timeout: float, memory: int, json_output: bool) -> int:
    try:
        async with Scheduler(SchedulerConfig(max_concurrent_processes=1)) as scheduler:
            result = await scheduler.run_code(code, language, stdin, timeout, memory)
    except (ValidationError, TransientError) as e:
        return _handle_grader_error(e)

    if json_output:
        click.echo(result.model_dump_json(by_alias=True, indent=2))
    else:
        _echo_run_result(result, timeout)

    if result.compile_failed:
        return EXIT_FAILURE
    if result.timed_out:
        return EXIT_TIMEOUT
    return result.exit_code if 0 <= result.exit_code < 256 else EXIT_FAILURE


def _echo_run_result(result: RunResult, timeout: float) -> None:
    if result.compile_output:
        click.echo(result.compile_output, err=True)
    if result.stdout:
        click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr and result.stderr != result.compile_output:
        click.echo(result.stderr, nl=not result.stderr.endswith("\n"), err=True)
    if result.timed_out:
        message = f"The program did not finish within {timeout} seconds."
        click.echo(format_error("Time limit exceeded", message), err=True)
    elif result.memory_exceeded:
        click.echo(format_error("Memory limit exceeded", "The program exceeded its memory limit."), err=True)
    if sys.stdout.isatty():
        click.echo(click.style(f"✓ Done in {result.execution_time_ms}ms", fg="green", dim=True), err=True)


async def _grade(request: ExecutionRequest, json_output: bool) -> int:
    try:
        async with Scheduler() as scheduler:
            report = await scheduler.grade(request)
    except (ValidationError, TransientError) as e:
        return _handle_grader_error(e)

    if json_output:
        click.echo(report.model_dump_json(by_alias=True, indent=2))
    else:
        click.echo(format_report(report))
    return EXIT_SUCCESS if report.accepted else EXIT_FAILURE


async def _health(json_output: bool) -> int:
    async with Scheduler() as scheduler:
        report = await scheduler.health.check()
    if json_output:
        click.echo(report.model_dump_json(indent=2))
    elif report.healthy:
        click.echo(click.style(f"healthy ({report.language}, {report.latency_ms}ms)", fg="green"))
    else:
        click.echo(format_error("Health check failed", report.error or "unknown error"), err=True)
    if report.missing_toolchains and not json_output:
        for language, executables in report.missing_toolchains.items():
            click.echo(f"  missing toolchain for {language}: {', '.join(executables)}", err=True)
    return EXIT_SUCCESS if report.healthy else EXIT_FAILURE


# =============================================================================
# Commands
# =============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Show debug logs")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors in logs")
@click.version_option(__version__, "-V", "--version", prog_name="code-grader")
def main(verbose: bool, quiet: bool) -> None:
    """Compile, run and grade untrusted code in sandboxed processes."""
    configure_logging(verbose=verbose, quiet=quiet)


@main.command("run")
@click.argument("source")
@click.option("-l", "--language", help="Language id (auto-detected from file extension)")
@click.option("-i", "--input", "stdin_text", default="", help="Text fed to the program's stdin")
@click.option(
    "--input-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File fed to the program's stdin",
)
@click.option("-t", "--timeout", type=float, default=5.0, show_default=True, help="Time limit in seconds")
@click.option("-m", "--memory", type=int, default=64, show_default=True, help="Memory limit in MB")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def run_command(
    source: str,
    language: str | None,
    stdin_text: str,
    input_file: Path | None,
    timeout: float,
    memory: int,
    json_output: bool,
) -> NoReturn:
    """Run SOURCE once, without grading.

    SOURCE can be a file path, inline code, or "-" for stdin.

    Examples:

    \b
      code-grader run solution.py -i "Hello World"
      code-grader run -l python 'print(input()[::-1])' -i abc
      code-grader run solution.cpp --input-file in.txt --json
    """
    code = read_source(source)
    resolved = language.lower() if language else (detect_language(source) or "python")
    stdin = input_file.read_text(encoding="utf-8") if input_file is not None else stdin_text
    sys.exit(asyncio.run(_run(code, resolved, stdin, timeout, memory, json_output)))


@main.command("grade")
@click.argument("source")
@click.option("-l", "--language", help="Language id (auto-detected from file extension)")
@click.option(
    "--tests",
    "tests_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with test cases",
)
@click.option("-t", "--timeout", type=float, default=5.0, show_default=True, help="Time limit per test case")
@click.option("-m", "--memory", type=int, default=64, show_default=True, help="Memory limit per test case in MB")
@click.option("--json", "json_output", is_flag=True, help="Output the grading report as JSON")
def grade_command(
    source: str,
    language: str | None,
    tests_path: Path,
    timeout: float,
    memory: int,
    json_output: bool,
) -> NoReturn:
    """Grade SOURCE against the test cases in --tests.

    Exits 0 when every test case is accepted, 1 otherwise.

    \b
    tests.json:
      [{"input": "1 2", "expectedOutput": "3"}, ...]
    """
    code = read_source(source)
    resolved = language.lower() if language else (detect_language(source) or "python")
    request = ExecutionRequest(
        code=code,
        language=resolved,
        test_cases=load_test_cases(tests_path),
        time_limit_seconds=timeout,
        memory_limit_mb=memory,
    )
    sys.exit(asyncio.run(_grade(request, json_output)))


@main.command("languages")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def languages_command(json_output: bool) -> None:
    """List supported languages and toolchain availability."""
    registry = get_registry()
    missing = registry.missing_toolchains()
    specs = registry.list_supported_languages()

    if json_output:
        payload = [
            {
                "id": spec.id,
                "displayName": spec.display_name,
                "version": spec.version,
                "compiled": spec.requires_compilation,
                "available": spec.id not in missing,
                "template": spec.template,
            }
            for spec in specs
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    for spec in specs:
        status = (
            click.style("available", fg="green")
            if spec.id not in missing
            else click.style(f"missing {', '.join(missing[spec.id])}", fg="red")
        )
        kind = "compiled" if spec.requires_compilation else "interpreted"
        click.echo(f"{spec.id:<12} {spec.display_name} {spec.version:<6} {kind:<12} {status}")


@main.command("health")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def health_command(json_output: bool) -> NoReturn:
    """Run the hello-world self-test through the full pipeline."""
    sys.exit(asyncio.run(_health(json_output)))


if __name__ == "__main__":
    main()
