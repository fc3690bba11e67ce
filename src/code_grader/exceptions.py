"""Exception hierarchy for code-grader.

All exceptions inherit from GraderError.

Hierarchy:
    GraderError (base)
    ├── TransientError (retry-later marker base)
    │   ├── ServiceBusyError          ← worker pool queue saturated
    │   └── SandboxInternalError      ← process spawn / sandbox infrastructure failure
    ├── PermanentError (non-retryable marker base)
    │   └── CompileError              ← toolchain rejected the submission
    └── ValidationError (caller-bug marker base)
        ├── CodeValidationError       ← empty / oversized / NUL-byte code
        ├── UnsupportedLanguageError  ← language id not in the registry
        ├── TestCaseValidationError   ← empty test case list
        └── LimitValidationError      ← non-positive or out-of-range limits

Per-test-case verdicts (time limit, memory limit, runtime error, wrong
answer) are not exceptions: they are folded into ExecutionOutcome via
models.Verdict. Only errors that mean "the judge could not grade this"
or "the request is malformed" are raised to the caller.

Aliases:
    InternalError = SandboxInternalError
    NotSupportedError = UnsupportedLanguageError
    InputValidationError = ValidationError
"""

from __future__ import annotations

from typing import Any


class GraderError(Exception):
    """Base exception for all grader errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(GraderError):
    """Base for errors where the caller should retry later.

    The submitted code is not at fault; the grading service was unable
    to run it right now.
    """


class PermanentError(GraderError):
    """Base for errors that won't succeed on retry with the same input."""


# =============================================================================
# Service Errors (retry later)
# =============================================================================


class ServiceBusyError(TransientError):
    """Worker pool queue is saturated.

    Raised when the FIFO wait queue already holds the configured maximum
    number of waiters, or when a waiter is not granted a slot within the
    queue timeout. The request consumed no sandbox resources.
    """


class SandboxInternalError(TransientError):
    """Sandbox infrastructure failure.

    Raised when a sandboxed process cannot be spawned (toolchain missing,
    fork failure, descriptor exhaustion) or the workspace cannot be
    created. Distinct from the program's own runtime failures.
    """


# =============================================================================
# Compilation
# =============================================================================


class CompileError(PermanentError):
    """The toolchain rejected the submission.

    Raised by the compile step and converted by the scheduler into a
    uniform compile_error outcome for every test case.

    Attributes:
        stderr: Compiler diagnostics (already truncated)
        exit_code: Compiler exit code (-1 when the compile step timed out)
    """

    def __init__(
        self,
        message: str,
        stderr: str = "",
        exit_code: int = 1,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.stderr = stderr
        self.exit_code = exit_code


# =============================================================================
# Input Validation (caller bugs)
# =============================================================================


class ValidationError(GraderError):
    """Base for malformed requests.

    Raised before any sandbox resource is consumed. Not retryable: the
    caller must fix the request.
    """


class CodeValidationError(ValidationError):
    """Code is empty, oversized, not UTF-8 text, or contains NUL bytes."""


class UnsupportedLanguageError(ValidationError):
    """Language identifier does not resolve in the language registry."""

    def __init__(self, language: str, supported: list[str] | None = None):
        supported = supported or []
        super().__init__(
            f"Unsupported language: {language}",
            context={"language": language, "supported": supported},
        )
        self.language = language
        self.supported = supported


class TestCaseValidationError(ValidationError):
    """Request carries no test cases, or a test input that is not UTF-8 text."""

    __test__ = False  # not a pytest test class


class LimitValidationError(ValidationError):
    """Time or memory limit is non-positive or above the configured maximum."""


# =============================================================================
# Aliases (names used by the platform's contract)
# =============================================================================

InternalError = SandboxInternalError
NotSupportedError = UnsupportedLanguageError
InputValidationError = ValidationError
