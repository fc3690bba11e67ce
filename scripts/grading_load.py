#!/usr/bin/env python3
# /// script
# requires-python = ">=3.12"
# dependencies = ["code-grader"]
# ///
"""Load test for the worker pool.

Fires many concurrent grading requests against one scheduler to verify:
- Pool backpressure holds (never more than max_concurrent_processes children)
- All requests eventually complete (no deadlocks, nothing dropped)
- No ServiceBusyError leaks through while the queue is below its depth

Usage:
    uv run python scripts/grading_load.py
"""

import asyncio
import time

from code_grader import ExecutionRequest, Scheduler, SchedulerConfig, TestCase

TOTAL_REQUESTS = 100
MAX_CONCURRENT = 5
TESTS_PER_REQUEST = 3
CODE = """\
import sys
n = int(sys.stdin.read())
# CPU-bound work so runs overlap
primes = sum(1 for i in range(2, n) if all(i % j for j in range(2, int(i**0.5) + 1)))
print(primes)
"""


async def main() -> None:
    config = SchedulerConfig(
        max_concurrent_processes=MAX_CONCURRENT,
        max_queue_depth=TOTAL_REQUESTS * TESTS_PER_REQUEST,
    )
    request = ExecutionRequest(
        code=CODE,
        language="python",
        test_cases=[TestCase(input="20000", expected_output="2262")] * TESTS_PER_REQUEST,
        time_limit_seconds=10,
    )

    print(f"Launching {TOTAL_REQUESTS} concurrent requests x {TESTS_PER_REQUEST} test cases")
    print(f"Pool: {MAX_CONCURRENT} slots")
    print()

    accepted = 0
    failed = 0
    peak_in_use = 0
    errors: list[str] = []

    async with Scheduler(config) as scheduler:
        start = time.perf_counter()

        async def grade_one(i: int) -> None:
            nonlocal accepted, failed
            try:
                report = await scheduler.grade(request)
                if report.accepted:
                    accepted += 1
                else:
                    failed += 1
                    first = next(o for o in report.outcomes if not o.success)
                    errors.append(f"Request {i}: {first.verdict.value} {first.error[:100]}")
            except Exception as e:
                failed += 1
                errors.append(f"Request {i}: {type(e).__name__}: {e}")

        tasks = [asyncio.create_task(grade_one(i)) for i in range(TOTAL_REQUESTS)]

        while not all(t.done() for t in tasks):
            done = sum(1 for t in tasks if t.done())
            snap = scheduler.pool_snapshot()
            peak_in_use = max(peak_in_use, snap.in_use)
            print(
                f"\r  Progress: {done}/{TOTAL_REQUESTS} done | "
                f"Slots: {snap.in_use}/{snap.capacity} | "
                f"Waiting: {snap.waiting}",
                end="",
                flush=True,
            )
            await asyncio.sleep(0.25)

        await asyncio.gather(*tasks)
        elapsed = time.perf_counter() - start

    print(f"\r{'':80}")
    print("Results:")
    print(f"  Accepted:   {accepted}/{TOTAL_REQUESTS}")
    print(f"  Failed:     {failed}/{TOTAL_REQUESTS}")
    print(f"  Peak slots: {peak_in_use}/{MAX_CONCURRENT}")
    print(f"  Total:      {elapsed:.1f}s")
    print(f"  Throughput: {TOTAL_REQUESTS / elapsed:.1f} requests/s")

    if errors:
        print(f"\nErrors ({len(errors)}):")
        for e in errors[:10]:
            print(f"  {e}")
        if len(errors) > 10:
            print(f"  ... and {len(errors) - 10} more")


if __name__ == "__main__":
    asyncio.run(main())
