"""Health self-test: run a known-good program through the full pipeline.

The check compiles (if needed) and runs the health language's hello-world
program with the normal scheduler, so it exercises admission, workspaces,
the sandbox and classification together. It never raises: any failure is
reported as an unhealthy HealthReport.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from code_grader import constants
from code_grader._logging import get_logger
from code_grader.exceptions import GraderError
from code_grader.models import ExecutionRequest, TestCase
from code_grader.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from code_grader.scheduler import Scheduler

logger = get_logger(__name__)

HealthStatus = Literal["healthy", "degraded", "unknown"]


class HealthReport(BaseModel):
    """Result of one self-test."""

    model_config = ConfigDict(frozen=True)

    healthy: bool
    latency_ms: int = Field(ge=0)
    language: str
    error: str | None = None
    checked_at: datetime
    missing_toolchains: dict[str, list[str]] = Field(default_factory=dict)


class HealthMonitor:
    """Runs the self-test on demand or periodically in the background."""

    def __init__(self, scheduler: Scheduler, language: str = constants.DEFAULT_HEALTH_CHECK_LANGUAGE) -> None:
        self._scheduler = scheduler
        self._language = language
        self._task: asyncio.Task[None] | None = None
        self.last_report: HealthReport | None = None

    @property
    def status(self) -> HealthStatus:
        """healthy / degraded from the last report, unknown before the first check."""
        if self.last_report is None:
            return "unknown"
        return "healthy" if self.last_report.healthy else "degraded"

    async def check(self) -> HealthReport:
        """Run the hello-world program once and report."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        error: str | None = None
        healthy = False
        config = self._scheduler.config

        try:
            spec = self._scheduler.registry.resolve(self._language)
            report = await self._scheduler.grade(
                ExecutionRequest(
                    code=spec.hello_world,
                    language=spec.id,
                    test_cases=[TestCase(input="", expected_output=constants.HEALTH_CHECK_EXPECTED_OUTPUT)],
                    time_limit_seconds=min(constants.HEALTH_CHECK_TIME_LIMIT_SECONDS, config.max_time_limit_seconds),
                    memory_limit_mb=min(constants.HEALTH_CHECK_MEMORY_LIMIT_MB, config.max_memory_limit_mb),
                )
            )
            healthy = report.accepted
            if not healthy:
                outcome = report.outcomes[0]
                error = outcome.error or f"Unexpected output: {outcome.output!r}"
        except GraderError as e:
            error = f"{type(e).__name__}: {e.message}"
        except Exception as e:
            logger.error("Health check crashed", extra={"language": self._language}, exc_info=True)
            error = f"{type(e).__name__}: {e}"

        report = HealthReport(
            healthy=healthy,
            latency_ms=round((loop.time() - start) * 1000),
            language=self._language,
            error=error,
            checked_at=datetime.now(UTC),
            missing_toolchains=self._scheduler.registry.missing_toolchains(),
        )
        self.last_report = report
        if healthy:
            logger.debug("Health check passed", extra={"latency_ms": report.latency_ms})
        else:
            logger.warning("Health check failed", extra={"language": self._language, "error": error})
        return report

    async def _loop(self, interval: float) -> None:
        while True:
            await self.check()
            await asyncio.sleep(interval)

    def start(self, interval: float | None = None) -> None:
        """Start periodic checks. Calling it while running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        interval = interval if interval is not None else self._scheduler.config.health_check_interval_seconds
        self._task = asyncio.create_task(self._loop(interval), name="code-grader-health")
        self._task.add_done_callback(log_task_exception)

    async def stop(self) -> None:
        """Stop periodic checks. Safe to call multiple times."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
