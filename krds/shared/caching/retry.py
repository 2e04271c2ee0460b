"""
Bounded retry with exponential backoff for backend adapters.
"""
import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from .exceptions import BackendUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    backend: str,
    operation: str,
    retries: int = 2,
    delay: float = 0.05,
    retry_on: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError, OSError),
) -> T:
    """
    Run ``func`` and retry transient failures.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        backend: Backend name used in logs and in the raised error
        operation: Operation name used in logs and in the raised error
        retries: Retries after the first attempt
        delay: Base delay in seconds, doubled on every retry
        retry_on: Exception types treated as transient

    Raises:
        BackendUnavailableError: when every attempt failed with a transient error
    """
    last_exception = None

    for attempt in range(retries + 1):
        try:
            return await func()
        except retry_on as e:
            last_exception = e
            if attempt < retries:
                backoff = delay * (2 ** attempt)
                logger.warning(
                    f"Cache backend operation failed, retrying in {backoff}s",
                    backend=backend,
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=retries,
                    error=str(e),
                )
                await asyncio.sleep(backoff)
            else:
                logger.error(
                    "Cache backend operation failed after all retries",
                    backend=backend,
                    operation=operation,
                    attempts=retries + 1,
                    error=str(e),
                )

    raise BackendUnavailableError(backend, operation, str(last_exception)) from last_exception
