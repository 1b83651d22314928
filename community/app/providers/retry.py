"""Retry mechanism with jittered exponential backoff.

This module provides a backoff executor for transient failures of remote
calls (chat completion requests in particular) and a decorator form of it.

Delays grow geometrically (``base_delay_ms * 2**attempt``), receive up to
25% positive jitter so retrying clients do not synchronise, and are capped
at ``max_delay_ms``.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import openai

from community.app.core.config import settings
from community.app.core.logging import get_logger
from community.app.exceptions import RetryAttemptError

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

ShouldRetry = Callable[[BaseException], bool]

# Largest fraction of the exponential delay added as jitter
MAX_JITTER_FRACTION = 0.25

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503})


def _always_retry(error: BaseException) -> bool:
    return True


@dataclass
class ExponentialBackoff:
    """Configuration and executor for retries with exponential backoff.

    ``max_retries`` is the total number of attempts an operation gets.

    Attributes:
        base_delay_ms: Delay before the first retry, in milliseconds
        max_delay_ms: Upper bound for any single delay, in milliseconds
        max_retries: Maximum number of attempts

    Example:
        >>> backoff = ExponentialBackoff(base_delay_ms=100, max_delay_ms=1000, max_retries=3)
        >>> 200 <= backoff.calculate_delay(1) <= 250
        True
    """

    base_delay_ms: float = 1000
    max_delay_ms: float = 32_000
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("backoff delays must not be negative")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before retrying after ``attempt`` failed.

        Args:
            attempt: The attempt number that just failed (0-indexed)

        Returns:
            Delay in milliseconds

        Raises:
            RetryAttemptError: If ``attempt`` is outside ``[0, max_retries)``
        """
        if attempt < 0 or attempt >= self.max_retries:
            raise RetryAttemptError(attempt, self.max_retries)

        delay = self.base_delay_ms * (2 ** attempt)
        jitter = random.uniform(0, MAX_JITTER_FRACTION) * delay
        return min(delay + jitter, self.max_delay_ms)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: Optional[ShouldRetry] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        Args:
            operation: Zero-argument async callable
            should_retry: Classifies a failure as transient (True) or fatal
                (False). Defaults to retrying every exception.

        Returns:
            The operation's result

        Raises:
            The last exception raised by ``operation``, unchanged
        """
        classify = should_retry or _always_retry
        name = getattr(operation, "__name__", repr(operation))

        for attempt in range(self.max_retries):
            try:
                return await operation()
            except Exception as e:
                if not classify(e):
                    logger.debug(
                        f"Non-retryable exception in {name}: {type(e).__name__}: {e}"
                    )
                    raise

                if attempt == self.max_retries - 1:
                    logger.warning(
                        f"Max retries ({self.max_retries}) exceeded for {name}: "
                        f"{type(e).__name__}: {e}"
                    )
                    raise

                delay_ms = self.calculate_delay(attempt)
                logger.warning(
                    f"Retry {attempt + 1}/{self.max_retries} for {name} "
                    f"after {type(e).__name__}: {e}. Waiting {delay_ms:.0f}ms..."
                )
                await asyncio.sleep(delay_ms / 1000.0)

        # Unreachable: the loop either returns or re-raises on its last pass.
        raise AssertionError("retry loop exited without result")


def with_retry(
    backoff: Optional[ExponentialBackoff] = None,
    should_retry: Optional[ShouldRetry] = None,
) -> Callable[[F], F]:
    """Decorator that adds retry logic with exponential backoff.

    Example:
        >>> @with_retry(ExponentialBackoff(max_retries=3), is_retryable_llm_error)
        ... async def create_completion(payload):
        ...     return await client.chat.completions.create(**payload)
    """
    policy = backoff or ExponentialBackoff()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async def call() -> Any:
                return await func(*args, **kwargs)

            call.__name__ = func.__name__
            return await policy.execute_with_retry(call, should_retry)

        return wrapper  # type: ignore

    return decorator


def is_retryable_llm_error(error: BaseException) -> bool:
    """Decide whether a chat completion failure is worth retrying.

    Rate limiting and server-side failures (429, 500, 503), dropped
    connections and timeouts are transient; authentication and request
    errors are not.
    """
    # APITimeoutError subclasses APIConnectionError
    if isinstance(error, openai.APIConnectionError):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, (httpx.TransportError, asyncio.TimeoutError))


def llm_backoff_from_settings() -> ExponentialBackoff:
    return ExponentialBackoff(
        base_delay_ms=settings.llm_backoff_base_delay_ms,
        max_delay_ms=settings.llm_backoff_max_delay_ms,
        max_retries=settings.llm_backoff_max_retries,
    )


llm_backoff = llm_backoff_from_settings()
