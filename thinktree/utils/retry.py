"""Retry decorator with exponential backoff for inference calls.

Only the inference client retries. The thinking engine treats a failed call
as final and surfaces it to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar, cast

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

P = ParamSpec("P")
T = TypeVar("T")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[Exception], ...] | None = None,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Retry an async callable with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, including the first one.
        base_delay: Initial delay between attempts in seconds.
        max_delay: Upper bound on the delay in seconds.
        retry_on: Exception types that trigger another attempt. Anything
            else is re-raised immediately. Defaults to all exceptions.

    Returns:
        Decorated coroutine function.

    Raises:
        TypeError: If applied to a plain (non-async) function.

    Example:
        @retry_with_backoff(max_attempts=3, retry_on=(APIConnectionError,))
        async def call_model(prompt: str) -> str:
            return await api.generate(prompt)

    """
    retry_exceptions = retry_on or (Exception,)

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("retry_with_backoff can only be applied to async functions")

        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
            retry=retry_if_exception_type(retry_exceptions),
            reraise=True,
        )
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                result = await func(*args, **kwargs)  # type: ignore[misc]
                return cast(T, result)
            except retry_exceptions as e:
                logger.warning(f"Retry attempt for {func.__name__}: {e}")
                raise

        return cast(Callable[P, T], wrapper)

    return decorator
