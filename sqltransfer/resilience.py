"""Retry and timeout helpers for database operations.

Retries are applied to bookkeeping writes (run records, watermark state).
Batch extraction and loading are never retried inside a run; they only use
the timeout helper and the transient-error classifier.
"""

import concurrent.futures
import functools
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type

from sqlalchemy import exc as sa_exc

from sqltransfer.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_EXCEPTIONS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    ConnectionError,
    TimeoutError,
    concurrent.futures.TimeoutError,
)


@dataclass
class RetryConfig:
    """Configuration for retry mechanism with exponential backoff."""

    max_attempts: int = 3
    initial_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_on_exceptions: List[Type[Exception]] = field(
        default_factory=lambda: list(TRANSIENT_EXCEPTIONS)
    )


class RetryHandler:
    """Implements retry logic with exponential backoff and jitter."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self.logger = get_logger(f"{__name__}.RetryHandler")

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should trigger a retry."""
        if attempt >= self.config.max_attempts:
            return False
        return isinstance(exception, tuple(self.config.retry_on_exceptions))

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for next retry attempt with exponential backoff and jitter."""
        base_delay = min(
            self.config.initial_delay * (self.config.backoff_multiplier**attempt),
            self.config.max_delay,
        )

        if self.config.jitter:
            jitter_factor = 0.1
            base_delay *= 1 + random.uniform(-jitter_factor, jitter_factor)

        return max(base_delay, 0.0)

    def execute_with_retry(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with retry logic.

        The last exception is re-raised unchanged once attempts are exhausted
        or when the exception is not retryable.
        """
        for attempt in range(self.config.max_attempts):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    self.logger.info(f"Operation succeeded after {attempt} retry attempts")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt + 1):
                    self.logger.error(
                        f"Operation failed permanently after {attempt + 1} attempts: {e}"
                    )
                    raise

                delay = self.calculate_delay(attempt)
                self.logger.warning(
                    f"Retry attempt {attempt + 1}/{self.config.max_attempts} after error: "
                    f"{e}. Next retry in {delay:.2f} seconds"
                )
                if delay > 0:
                    time.sleep(delay)

        raise RuntimeError("All retry attempts failed")


def retry(config: RetryConfig):
    """Decorator to apply only retry logic to a function."""

    def decorator(func: Callable) -> Callable:
        retry_handler = RetryHandler(config)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return retry_handler.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator


def is_transient_error(exception: BaseException) -> bool:
    """Whether an error is worth retrying in a later run (connectivity or timeout)."""
    if isinstance(exception, sa_exc.DBAPIError) and exception.connection_invalidated:
        return True
    return isinstance(exception, TRANSIENT_EXCEPTIONS)


def call_with_timeout(timeout: Optional[float], func: Callable, *args, **kwargs) -> Any:
    """Run ``func`` and raise ``TimeoutError`` if it does not finish in time.

    The call runs on a helper thread; on timeout that thread is abandoned
    and may still complete in the background. A falsy timeout calls
    ``func`` directly.
    """
    if not timeout:
        return func(*args, **kwargs)

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="sqltransfer-timeout"
    )
    try:
        future = executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise TimeoutError(f"Operation timed out after {timeout} seconds") from None
    finally:
        executor.shutdown(wait=False)
