"""Fold ordered test-case outcomes into a submission-level report."""

from __future__ import annotations

from collections.abc import Sequence

from code_grader.models import ExecutionOutcome, GradingReport


def aggregate(outcomes: Sequence[ExecutionOutcome], compile_error: str | None = None) -> GradingReport:
    """Build a GradingReport; outcome order is kept as given."""
    return GradingReport(
        outcomes=list(outcomes),
        passed_count=sum(1 for outcome in outcomes if outcome.success),
        total_count=len(outcomes),
        total_execution_time_ms=sum(outcome.execution_time_ms for outcome in outcomes),
        compile_error=compile_error,
    )
