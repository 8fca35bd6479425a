"""
Asyncio helpers for timeouts, retries and background task tracking.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from .errors import MemoryTimeoutError
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


async def with_timeout(awaitable: Awaitable[T],
                       timeout: float,
                       operation: str,
                       service: str,
                       thread_id: Optional[str] = None) -> T:
    """Await with a deadline.

    Raises:
        MemoryTimeoutError: If the awaitable does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise MemoryTimeoutError.operation_timeout(operation, service, timeout, thread_id)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for a zero-based attempt number."""
    return min(base_delay * (2**attempt), max_delay)


async def retry_async(func: Callable[[], Awaitable[T]],
                      attempts: int,
                      base_delay: float,
                      max_delay: float,
                      operation: str) -> T:
    """Call an async function until it succeeds or attempts run out.

    Args:
        func: Zero-argument coroutine factory
        attempts: Maximum number of calls
        base_delay: Delay before the second attempt, doubled after each failure
        max_delay: Upper bound for the delay
        operation: Name used in log lines

    Returns:
        The first successful result

    Raises:
        The last exception raised by func
    """
    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            return await func()
        except Exception as e:
            last_error = e
            logger.warning(f'{operation} attempt {attempt + 1}/{attempts} failed: {e}')
            if attempt < attempts - 1:
                await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))
    raise last_error


class BackgroundTasks:
    """Registry that keeps fire-and-forget tasks alive and logs their failures."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], description: str) -> asyncio.Task:
        """Schedule a coroutine in the background."""
        task = asyncio.ensure_future(coro)
        task.set_name(f'{self.name}:{description}')
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            to_dict = getattr(error, 'to_dict', None)
            logger.error(f'Background task {task.get_name()} failed: {error}',
                         extra={'error': to_dict() if to_dict else str(error)})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task scheduled so far, including ones they schedule."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
