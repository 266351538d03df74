"""
kubeherd/utils/async_retry.py

Bounded retry for async callables. This is the only retry primitive in the
project: remote commands never retry on their own, so anything that has to
wait for a host (SSH readiness after provisioning, a token file appearing on
master-0) wraps a single attempt with `async_retry` and an explicit budget.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function so it is attempted up to `retries` times.

    A fixed `delay` separates attempts. Exceptions outside `retry_on` are
    raised immediately; the last matching exception is re-raised once the
    budget is spent.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failed attempt and an error when
            the budget is exhausted. Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that consume an attempt. Defaults to (Exception,).

    Returns:
        A decorator producing the retrying wrapper.
    """
    if retries < 1:
        raise ValueError(f"retries must be >= 1, got {retries}")

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d of %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(delay)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts of %r failed", retries, func.__qualname__
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator
