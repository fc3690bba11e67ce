"""Resource cleanup utilities for sandboxed executions.

Cleanup operations that log errors but never raise: they run on every
exit path of an execution (success, failure, timeout, cancellation) and
must not mask the execution's own outcome.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from code_grader._logging import get_logger
from code_grader.constants import PROCESS_KILL_TIMEOUT_SECONDS, PROCESS_TERM_TIMEOUT_SECONDS
from code_grader.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process_tree(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    *,
    graceful: bool = False,
    term_timeout: float = PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Kill a sandboxed process and all its descendants, then reap it.

    Orphans are the failure mode this guards against: a submission that
    forks and lets the parent exit must not leave children running. The
    tree is signalled even when the leader already exited.

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g., "run", "compile")
        context_id: Context for logging (execution id)
        graceful: Send SIGTERM first and give the tree term_timeout to exit
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process was reaped, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if graceful and proc.returncode is None:
            logger.debug(f"Sending SIGTERM to {name} tree", extra={"context_id": context_id})
            await proc.terminate_tree()
            try:
                await proc.wait_with_timeout(term_timeout)
            except TimeoutError:
                logger.debug(
                    f"{name} didn't respond to SIGTERM, force killing",
                    extra={"context_id": context_id, "term_timeout": term_timeout},
                )

        # Always SIGKILL the tree: the leader may be gone while descendants live on
        await proc.kill_tree()

        try:
            await proc.wait_with_timeout(kill_timeout)
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

        logger.debug(
            f"{name} tree reaped",
            extra={"context_id": context_id, "returncode": proc.returncode},
        )
        return True

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_workspace(
    workdir: Path | None,
    context_id: str,
) -> bool:
    """Delete an execution workspace recursively.

    Silently succeeds if the directory doesn't exist.

    Args:
        workdir: Workspace directory (None safe - returns immediately)
        context_id: Context for logging (execution id)

    Returns:
        True if the workspace is gone, False if issues occurred
    """
    if workdir is None:
        return True

    try:
        if not await aiofiles.os.path.exists(workdir):
            return True
        await asyncio.to_thread(shutil.rmtree, workdir)
        logger.debug("workspace deleted", extra={"context_id": context_id, "path": str(workdir)})
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            "workspace removal error",
            extra={"context_id": context_id, "path": str(workdir), "error": str(e), "error_type": type(e).__name__},
        )
        return False
