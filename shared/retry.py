"""
Retry mechanism for resilient operations.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.logging import get_logger

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.1,
                 max_delay: float = 2.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay after the given (1-based) failed attempt."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions."""

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{func.__name__}")

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 1:
                        logger.info("Retry succeeded", attempt=attempt, function=func.__name__)
                    return result

                except exceptions as e:
                    if attempt == config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            function=func.__name__,
                            error=str(e)
                        )
                        raise RetryError(
                            f"Function {func.__name__} failed after {config.max_attempts} attempts",
                            last_exception=e,
                            attempts=config.max_attempts
                        ) from e

                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay=delay,
                        function=func.__name__,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


async def retry_on_result(operation: Callable[[int], Awaitable[T]],
                          should_retry: Callable[[T], bool],
                          config: RetryConfig,
                          *,
                          time_left: Optional[Callable[[], float]] = None,
                          on_retry: Optional[Callable[[int, T, float], None]] = None) -> T:
    """Run ``operation`` until it yields a result that should not be retried.

    ``operation`` receives the 1-based attempt number. A retry is skipped when
    the backoff delay would outlast ``time_left()``; the last result is then
    returned as-is.
    """
    attempt = 1
    while True:
        result = await operation(attempt)
        if attempt >= config.max_attempts or not should_retry(result):
            return result

        delay = calculate_delay(attempt, config)
        if time_left is not None and delay >= time_left():
            return result

        if on_retry is not None:
            on_retry(attempt, result, delay)
        await asyncio.sleep(delay)
        attempt += 1
