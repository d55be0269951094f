"""Deadline wrapper for remote operations."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from dermasync.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(seconds: float, operation: Callable[[], Awaitable[T]]) -> T:
    """
    Race `operation()` against a deadline.

    The loser is cancelled and not waited on, so the caller gets control
    back at the deadline even if the operation ignores cancellation. A
    cancelled remote call may still have been applied server-side: an
    `OperationTimeoutError` means the outcome is unknown, not failed.
    """
    task = asyncio.ensure_future(operation())
    timer = asyncio.ensure_future(asyncio.sleep(seconds))
    try:
        done, _ = await asyncio.wait({task, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        timer.cancel()
        raise

    if task in done:
        timer.cancel()
        return task.result()

    task.cancel()
    task.add_done_callback(_consume_result)
    logger.warning("Operation timed out after %.1fs", seconds)
    raise OperationTimeoutError()


def _consume_result(task: asyncio.Task) -> None:
    # Late failures of an abandoned operation would otherwise be reported as never retrieved
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Timed-out operation later failed: %s", task.exception())
