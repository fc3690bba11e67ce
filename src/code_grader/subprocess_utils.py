"""Subprocess I/O utilities.

- read_bounded: drain a pipe to EOF while keeping at most N bytes
- feed_stdin: write a payload to a child's stdin and close it
- log_task_exception: done-callback that surfaces background task failures
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

from code_grader._logging import get_logger
from code_grader.constants import STREAM_READ_CHUNK_SIZE

logger = get_logger(__name__)


@dataclass(frozen=True)
class CapturedStream:
    """Bytes kept from one pipe."""

    data: bytes
    truncated: bool
    total_bytes: int


async def read_bounded(
    stream: asyncio.StreamReader | None,
    limit: int,
    *,
    chunk_size: int = STREAM_READ_CHUNK_SIZE,
) -> CapturedStream:
    """Read a pipe until EOF, keeping only the first ``limit`` bytes.

    The pipe is always drained to EOF: a child blocked on a full pipe would
    otherwise never exit. Bytes past the limit are counted and dropped, so
    memory stays bounded no matter how much the child writes.

    Args:
        stream: Child's stdout or stderr (None yields an empty capture)
        limit: Maximum bytes to keep
        chunk_size: Bytes requested per read

    Returns:
        CapturedStream with the kept bytes and whether anything was dropped
    """
    if stream is None:
        return CapturedStream(b"", truncated=False, total_bytes=0)

    kept = bytearray()
    total = 0
    while chunk := await stream.read(chunk_size):
        total += len(chunk)
        room = limit - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
    return CapturedStream(bytes(kept), truncated=total > limit, total_bytes=total)


async def feed_stdin(writer: asyncio.StreamWriter | None, payload: bytes, timeout: float) -> None:
    """Write payload to the child's stdin, then close it.

    A child that exits (or never reads) makes the pipe break; that is the
    child's business, not an error of the runner.
    """
    if writer is None:
        return
    try:
        async with asyncio.timeout(timeout):
            if payload:
                writer.write(payload)
                await writer.drain()
    except (BrokenPipeError, ConnectionResetError, TimeoutError):
        logger.debug("stdin not fully consumed by child", extra={"payload_bytes": len(payload)})
    finally:
        with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
            writer.close()


def decode_output(data: bytes) -> str:
    """Decode child output as UTF-8, replacing invalid sequences."""
    return data.decode("utf-8", errors="replace")


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
