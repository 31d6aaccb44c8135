"""
Resilience utilities: fixed-delay attempt loops and first-wins races.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from loguru import logger

T = TypeVar("T")


class AttemptsExhausted(Exception):
    """Raised by retry_attempts when every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"{attempts} attempt(s) failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_attempts(
    step: Callable[[int], Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 5.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    fatal: Tuple[Type[BaseException], ...] = (),
    on_failure: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> T:
    """
    Run ``step(attempt)`` until it returns, at most ``max_attempts`` times.

    Args:
        step: Coroutine factory receiving the 1-based attempt number
        max_attempts: Attempt budget
        delay: Fixed pause between attempts in seconds
        retry_on: Exception types that consume an attempt
        fatal: Exception types re-raised immediately (checked first)
        on_failure: Awaited after each failed attempt
        sleep: Pause used between attempts

    Raises:
        AttemptsExhausted: after the last failed attempt
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await step(attempt)
        except fatal:
            raise
        except retry_on as e:
            last_error = e
            logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e}")

            if on_failure:
                await on_failure(e, attempt)

            if attempt < max_attempts:
                logger.info(f"Retrying in {delay:.1f}s...")
                await sleep(delay)

    raise AttemptsExhausted(max_attempts, last_error)


async def first_success(waits: Dict[str, Awaitable]) -> Optional[str]:
    """
    Race named awaitables and return the name of the first one that succeeds.

    Awaitables that raise (typically a wait timing out) drop out of the race.
    Returns None when all of them failed. Losers are cancelled.
    """
    tasks = {asyncio.ensure_future(aw): name for name, aw in waits.items()}
    pending = set(tasks)

    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is None:
                    return tasks[task]
        return None
    finally:
        for task in pending:
            task.cancel()
