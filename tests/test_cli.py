"""Tests for the code-grader CLI.

Runs commands in-process through click's CliRunner. Commands that execute
programs need a Python toolchain and use a per-test workspace root.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from code_grader.cli import EXIT_CLI_ERROR, EXIT_TIMEOUT, detect_language, load_test_cases, main
from tests.conftest import skip_unless_python


@pytest.fixture
def cli(workspace_root: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setenv("CODE_GRADER_WORKSPACE_ROOT", str(workspace_root))
    return CliRunner()


@pytest.fixture
def tests_file(tmp_path: Path) -> Path:
    path = tmp_path / "tests.json"
    path.write_text(
        json.dumps(
            [
                {"input": "1 2", "expectedOutput": "3"},
                {"input": "20 22", "expectedOutput": "42"},
            ]
        )
    )
    return path


# ============================================================================
# Helpers
# ============================================================================


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("solution.py", "python"),
        ("main.CPP", "cpp"),
        ("Solution.java", "java"),
        ("a.mjs", "javascript"),
        ("prog.c", "c"),
        ("notes.txt", None),
        ("-", None),
        ("print(1)", None),
    ],
)
def test_detect_language(source: str, expected: str | None) -> None:
    assert detect_language(source) == expected


def test_load_test_cases_wrapped(tmp_path: Path) -> None:
    path = tmp_path / "t.json"
    path.write_text(json.dumps({"testCases": [{"input": "a", "expectedOutput": "b"}]}))
    cases = load_test_cases(path)
    assert len(cases) == 1
    assert cases[0].expected_output == "b"


# ============================================================================
# languages
# ============================================================================


def test_languages_json(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "languages", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [entry["id"] for entry in payload] == ["javascript", "python", "java", "cpp", "c"]
    assert all(entry["template"] for entry in payload)
    assert {entry["id"]: entry["compiled"] for entry in payload}["cpp"] is True


def test_languages_table(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "languages"])
    assert result.exit_code == 0
    assert "python" in result.stdout
    assert "interpreted" in result.stdout


# ============================================================================
# run
# ============================================================================


@skip_unless_python
def test_run_inline_with_input(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "run", "-l", "python", "print(input()[::-1])", "-i", "abc"])
    assert result.exit_code == 0
    assert result.stdout.startswith("cba")


@skip_unless_python
def test_run_file_json(cli: CliRunner, tmp_path: Path) -> None:
    source = tmp_path / "solution.py"
    source.write_text("import sys\nprint('out')\nsys.exit(3)\n")
    result = cli.invoke(main, ["-q", "run", str(source), "--json"])
    assert result.exit_code == 3
    payload = json.loads(result.stdout)
    assert payload["stdout"] == "out\n"
    assert payload["exitCode"] == 3


@skip_unless_python
def test_run_timeout_exit_code(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "run", "-l", "python", "while True: pass", "-t", "0.5"])
    assert result.exit_code == EXIT_TIMEOUT
    assert "Time limit exceeded" in result.stderr


def test_run_unknown_language(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "run", "-l", "cobol", "DISPLAY 'HI'."])
    assert result.exit_code == EXIT_CLI_ERROR
    assert "Unsupported language" in result.stderr


def test_run_invalid_limit(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "run", "-l", "python", "print(1)", "-t", "0"])
    assert result.exit_code == EXIT_CLI_ERROR
    assert "Time limit" in result.stderr


# ============================================================================
# grade
# ============================================================================


@skip_unless_python
def test_grade_accepted(cli: CliRunner, tmp_path: Path, tests_file: Path) -> None:
    source = tmp_path / "solution.py"
    source.write_text("a, b = map(int, input().split())\nprint(a + b)\n")
    result = cli.invoke(main, ["-q", "grade", str(source), "--tests", str(tests_file), "--json"])
    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert report["passedCount"] == 2
    assert report["score"] == 100.0
    assert [o["verdict"] for o in report["outcomes"]] == ["accepted", "accepted"]


@skip_unless_python
def test_grade_partial_exits_one(cli: CliRunner, tmp_path: Path, tests_file: Path) -> None:
    source = tmp_path / "solution.py"
    source.write_text("print(3)\n")
    result = cli.invoke(main, ["-q", "grade", str(source), "--tests", str(tests_file)])
    assert result.exit_code == 1
    assert "1/2 passed" in result.stdout


def test_grade_invalid_tests_file(cli: CliRunner, tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text('[{"input": "1"}]')
    result = cli.invoke(main, ["-q", "grade", "-l", "python", "print(1)", "--tests", str(bad)])
    assert result.exit_code == EXIT_CLI_ERROR
    assert "Invalid test cases" in result.stderr


# ============================================================================
# health
# ============================================================================


@skip_unless_python
def test_health_json(cli: CliRunner) -> None:
    result = cli.invoke(main, ["-q", "health", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["healthy"] is True
    assert payload["language"] == "python"
