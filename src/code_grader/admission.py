"""Worker pool admission for sandboxed processes.

One slot = one live sandboxed child process. The pool is the only shared
mutable state of the grader: a slot counter and a FIFO deque of waiter
futures, both mutated synchronously (no await in between), so the event
loop serializes every transition.

Fairness: a released slot is handed directly to the oldest waiter, never
returned to the counter while someone waits. A late arrival therefore
cannot overtake the queue.

Saturation: a request arriving while max_queue_depth waiters are already
queued is rejected up front (reject_if_saturated). The bound gates
admission only: slots requested later by an already admitted request
(its compile step, its test cases) always queue, so waiting can exceed
max_queue_depth by at most the in-flight requests' per-request concurrency.
A waiter not served within the queue timeout gets ServiceBusyError.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from uuid import uuid4

from code_grader._logging import get_logger
from code_grader.exceptions import ServiceBusyError

logger = get_logger(__name__)


@dataclass(frozen=True)
class Slot:
    """Tracks one unit of pool capacity held by a single process."""

    owner: str
    # Unique key in _held: owners (execution ids) hold several slots over time
    slot_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class PoolSnapshot:
    """Point-in-time view of the worker pool."""

    capacity: int
    in_use: int
    waiting: int
    max_queue_depth: int

    available: int = field(init=False)

    def __post_init__(self) -> None:
        self.available = max(0, self.capacity - self.in_use)


class WorkerPool:
    """Fixed-size FIFO pool of sandbox slots."""

    def __init__(self, capacity: int, *, max_queue_depth: int, queue_timeout_seconds: float) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._max_queue_depth = max_queue_depth
        self._queue_timeout = queue_timeout_seconds

        self._in_use = 0
        self._held: dict[str, Slot] = {}
        self._waiters: deque[asyncio.Future[Slot]] = deque()

    @property
    def waiting(self) -> int:
        """Number of queued waiters."""
        return sum(1 for fut in self._waiters if not fut.done())

    def reject_if_saturated(self, owner: str) -> None:
        """Fail fast when the wait queue is full.

        Called once per request, before its first slot; acquire() itself never
        rejects, so an admitted request is never cut off halfway.

        Raises:
            ServiceBusyError: max_queue_depth waiters already queued
        """
        waiting = self.waiting
        if waiting >= self._max_queue_depth and self._in_use >= self._capacity:
            raise ServiceBusyError(
                f"Execution queue is full ({waiting} waiting, {self._in_use}/{self._capacity} slots busy)",
                context={"owner": owner, "waiting": waiting, "in_use": self._in_use, "capacity": self._capacity},
            )

    async def acquire(self, owner: str, timeout: float | None = None) -> Slot:
        """Acquire a slot, waiting in FIFO order if none is free.

        Args:
            owner: Holder id for logging (execution id)
            timeout: Max seconds to wait (default: the pool's queue timeout)

        Returns:
            Slot to pass to release()

        Raises:
            ServiceBusyError: No slot granted within timeout
        """
        if self._in_use < self._capacity and not self.waiting:
            return self._grant(owner)

        timeout = self._queue_timeout if timeout is None else timeout
        waiter: asyncio.Future[Slot] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("waiting for pool slot", extra={"owner": owner, "waiting": len(self._waiters)})
        try:
            async with asyncio.timeout(timeout):
                slot = await waiter
        except BaseException as e:
            # A slot handed over just before the timeout/cancel fired must not leak
            if waiter.done() and not waiter.cancelled():
                self.release(waiter.result())
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            if isinstance(e, TimeoutError):
                raise ServiceBusyError(
                    f"No execution slot available within {timeout}s",
                    context={"owner": owner, "timeout": timeout, "capacity": self._capacity},
                ) from None
            raise
        return Slot(owner=owner, slot_id=slot.slot_id)

    def _grant(self, owner: str) -> Slot:
        slot = Slot(owner=owner)
        self._in_use += 1
        self._held[slot.slot_id] = slot
        logger.debug("pool slot acquired", extra={"owner": owner, "in_use": self._in_use})
        return slot

    def release(self, slot: Slot) -> None:
        """Return a slot to the pool. Releasing the same slot twice is a no-op."""
        if self._held.pop(slot.slot_id, None) is None:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            handoff = Slot(owner=slot.owner)
            self._held[handoff.slot_id] = handoff
            waiter.set_result(handoff)
            return
        self._in_use -= 1
        logger.debug("pool slot released", extra={"owner": slot.owner, "in_use": self._in_use})

    @contextlib.asynccontextmanager
    async def slot(self, owner: str, timeout: float | None = None) -> AsyncIterator[Slot]:
        """Hold a slot for the duration of the block."""
        held = await self.acquire(owner, timeout)
        try:
            yield held
        finally:
            self.release(held)

    def snapshot(self) -> PoolSnapshot:
        """Get current pool state."""
        return PoolSnapshot(
            capacity=self._capacity,
            in_use=self._in_use,
            waiting=self.waiting,
            max_queue_depth=self._max_queue_depth,
        )
