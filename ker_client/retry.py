"""
Bounded retry with exponential backoff.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

from .errors import TransportError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryCancelled(Exception):
    """The retry loop was stopped because its owner no longer needs it"""
    pass


def backoff_delays(base_delay: float, factor: float, attempts: int) -> Iterator[float]:
    """
    Delays to wait before each retry (one fewer than attempts).

    >>> list(backoff_delays(0.5, 2.0, 4))
    [0.5, 1.0, 2.0]
    """
    delay = base_delay
    for _ in range(max(attempts - 1, 0)):
        yield delay
        delay *= factor


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    attempts: int,
    base_delay: float,
    factor: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
    should_continue: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation until it succeeds or attempts run out.

    Args:
        operation: Coroutine function called with the 1-based attempt number
        attempts: Maximum number of attempts
        base_delay: Delay before the first retry, in seconds
        factor: Multiplier applied to the delay after each retry
        retry_on: Exception types that trigger a retry
        should_continue: Checked before every attempt; False stops the loop
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        RetryCancelled: If should_continue returned False
        The last retryable exception once attempts are exhausted
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    delays = backoff_delays(base_delay, factor, attempts)
    attempt = 0
    while True:
        attempt += 1
        if should_continue is not None and not should_continue():
            raise RetryCancelled(f"Stopped before attempt {attempt}")
        try:
            return await operation(attempt)
        except retry_on as e:
            delay = next(delays, None)
            if delay is None:
                logger.warning("Giving up after %d attempts: %s", attempt, e)
                raise
            logger.info("Attempt %d failed (%s), retrying in %.2fs", attempt, e, delay)
            await sleep(delay)
