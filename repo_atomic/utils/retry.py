"""Retry utilities for handling transient failures.

Provides a decorator and a call helper for retrying blocking operations with
exponential backoff. The transaction engine is synchronous, so both helpers
sleep the calling thread between attempts.

Key Exports:
    retry: Decorator for adding retry logic to a function.
    call_with_retry: Invoke a callable under the same retry rules.

Example:
    >>> from repo_atomic.utils.retry import retry
    >>>
    >>> @retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
    ... def fetch_issue(client, number):
    ...     return client.get(f"/issues/{number}")

Backoff Formula:
    delay = backoff_factor ** attempt_number
    For backoff_factor=2.0: 2s, 4s, 8s, 16s, ...
    A backoff_factor of 0 retries immediately.
"""

import functools
import time
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Invoke ``func`` until it succeeds or attempts are exhausted.

    Args:
        func: Zero-argument callable to invoke.
        max_attempts: Maximum number of invocations. Must be at least 1.
        backoff_factor: Base for the exponential delay between attempts.
        exceptions: Exception types that trigger a retry. Others propagate
            immediately.
        sleep: Function used to wait between attempts. Defaults to
            ``time.sleep``.

    Returns:
        The return value of the first successful invocation.

    Raises:
        The last caught exception if all attempts are exhausted.
    """
    name = getattr(func, "__name__", repr(func))
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except exceptions as e:
            if attempt == max_attempts:
                if max_attempts > 1:
                    log.error("retry_exhausted", function=name, attempts=attempt, error=str(e))
                raise

            delay = backoff_factor**attempt if backoff_factor else 0.0
            log.warning(
                "retry_attempt",
                function=name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            if delay:
                (sleep or time.sleep)(delay)

    raise RuntimeError("Retry logic error")


def retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up.
        backoff_factor: Base for exponential backoff calculation.
        exceptions: Tuple of exception types to catch and retry.

    Returns:
        A decorator function that wraps functions with retry logic.

    Warning:
        Be careful with long retry chains. With max_attempts=5 and
        backoff_factor=2.0, the total wait time before final failure is
        2 + 4 + 8 + 16 = 30 seconds, during which the calling thread blocks.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            bound = functools.partial(func, *args, **kwargs)
            functools.update_wrapper(bound, func)
            return call_with_retry(
                bound,
                max_attempts=max_attempts,
                backoff_factor=backoff_factor,
                exceptions=exceptions,
            )

        return wrapper

    return decorator
