"""Bounded exponential backoff for host calls."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from forkcascade.core.errors import RetryExhausted, TransientHostError
from forkcascade.core.log import logger

T = TypeVar("T")


def backoff_delays(attempts: int, base_delay: float, factor: float) -> list[float]:
    """Delays slept between attempts, e.g. [30, 60, 120]."""
    return [base_delay * factor**i for i in range(attempts)]


def retry_call(
    fn: Callable[..., T],
    *args,
    attempts: int = 3,
    base_delay: float = 30.0,
    factor: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (TransientHostError,),
    sleep: Callable[[float], None] = time.sleep,
    description: str | None = None,
    **kwargs,
) -> T:
    """Call fn, retrying retryable failures with exponential backoff.

    Args:
        fn: Callable to invoke
        attempts: Number of retries after the first call
        base_delay: Seconds slept before the first retry
        factor: Multiplier applied to the delay after each retry
        retry_on: Exception types that are worth retrying
        sleep: Sleep function (injected by tests)
        description: Name of the operation for logs and errors

    Returns:
        Whatever fn returns

    Raises:
        RetryExhausted: If every attempt raised a retryable error
    """
    description = description or getattr(fn, "__name__", "operation")
    delays = backoff_delays(attempts, base_delay, factor)

    for attempt in range(attempts + 1):
        try:
            return fn(*args, **kwargs)
        except retry_on as e:
            if attempt == attempts:
                logger.error(
                    f"{description} failed, retries exhausted",
                    attempts=attempts + 1,
                    error=str(e),
                )
                raise RetryExhausted(description, attempts + 1, e) from e
            delay = delays[attempt]
            logger.warn(
                f"{description} failed, retrying",
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(e),
            )
            sleep(delay)

    raise AssertionError("unreachable")
