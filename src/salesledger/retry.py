"""
Retry utilities for handling transient failures.

Provides exponential backoff for resilient operations and a circuit breaker
for calls to external collaborators.

This module provides:
- RetryConfig: Configuration for retry behavior
- RetryStats: Statistics for retry operations
- RetryError: Exception raised when all retries are exhausted
- calculate_backoff: Calculate delay with exponential backoff and jitter
- retry_async: Retry an async operation with exponential backoff
- RetryStrategy / ExponentialBackoffRetryStrategy: Retry of optimistic
  concurrency conflicts around a persistence unit of work
- CircuitBreaker: Circuit breaker for preventing cascading failures
- CircuitBreakerOpenError: Exception raised when circuit breaker is open
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from salesledger.exceptions import ConcurrencyConflictError, ConcurrencyExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


# Common transient exceptions that should be retried
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,  # Includes network errors
)

# Conflicts raised by repositories when an optimistic write loses a race
CONFLICT_EXCEPTIONS: tuple[type[Exception], ...] = (ConcurrencyConflictError,)


class CircuitState(Enum):
    """
    State of the circuit breaker.

    Attributes:
        CLOSED: Normal operation, requests are allowed through
        OPEN: Failure threshold exceeded, requests are blocked
        HALF_OPEN: Testing if service has recovered
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    The defaults are tuned for persistence conflicts: five retries starting
    at 50ms and doubling, so the delays are 50, 100, 200, 400 and 800ms.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        initial_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Fraction of delay to add as random jitter (0-1)

    Example:
        >>> config = RetryConfig(max_retries=3, initial_delay=2.0, max_delay=60.0)
    """

    max_retries: int = 5
    initial_delay: float = 0.05
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {self.initial_delay}.")

        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be positive, got {self.max_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}.")

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")


@dataclass
class RetryStats:
    """
    Statistics for retry operations.

    Attributes:
        attempts: Total number of attempts (including initial)
        successes: Number of successful attempts
        failures: Number of failed attempts
        total_delay_seconds: Total time spent in delays
        last_error: String representation of the last error
    """

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "total_delay_seconds": self.total_delay_seconds,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Number of consecutive failures before opening circuit
        recovery_timeout: Seconds to wait before attempting recovery
        half_open_max_calls: Max calls allowed in half-open state
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}.")

        if self.recovery_timeout <= 0:
            raise ValueError(f"recovery_timeout must be positive, got {self.recovery_timeout}.")

        if self.half_open_max_calls < 1:
            raise ValueError(f"half_open_max_calls must be >= 1, got {self.half_open_max_calls}.")


class RetryError(Exception):
    """
    Raised when all retry attempts fail.

    Attributes:
        attempts: Number of attempts made
        last_error: The last exception that was raised
    """

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class CircuitBreakerOpenError(Exception):
    """
    Raised when the circuit breaker is open and blocking requests.

    Attributes:
        recovery_time: Monotonic time when circuit may attempt recovery
    """

    def __init__(self, message: str, recovery_time: float) -> None:
        super().__init__(message)
        self.recovery_time = recovery_time


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds

    Example:
        >>> config = RetryConfig(initial_delay=0.05)
        >>> calculate_backoff(0, config)
        0.05
        >>> calculate_backoff(4, config)
        0.8
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_range = delay * config.jitter
        delay += random.uniform(-jitter_range, jitter_range)  # nosec B311 - not crypto

    return max(0.0, delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """
    Retry an async operation with exponential backoff.

    Args:
        operation: Async function to retry
        config: Retry configuration (uses defaults if None)
        retryable_exceptions: Exception types to retry on
        operation_name: Name for logging purposes
        sleep: Awaitable used for backoff delays

    Returns:
        Result of successful operation

    Raises:
        RetryError: If all retries exhausted
        Exception: Non-retryable exceptions are raised immediately

    Example:
        >>> async def fetch_customer():
        ...     return await client.get(f"/customers/{customer_id}")
        >>> data = await retry_async(fetch_customer, operation_name="fetch_customer")
    """
    config = config or RetryConfig()
    stats = RetryStats()
    last_error: Exception | None = None

    for attempt in range(config.max_retries + 1):
        stats.attempts += 1

        try:
            result = await operation()
            stats.successes += 1

            if attempt > 0:
                logger.info(
                    f"Operation {operation_name} succeeded after retry",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "total_attempts": stats.attempts,
                    },
                )

            return result

        except retryable_exceptions as e:
            last_error = e
            stats.failures += 1
            stats.last_error = str(e)

            if attempt < config.max_retries:
                delay = calculate_backoff(attempt, config)
                stats.total_delay_seconds += delay

                logger.warning(
                    f"Retrying {operation_name} after failure",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "max_retries": config.max_retries,
                        "delay_seconds": delay,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

                await sleep(delay)
            else:
                logger.error(
                    f"All retries exhausted for {operation_name}",
                    extra={
                        "operation": operation_name,
                        "attempts": stats.attempts,
                        "total_delay_seconds": stats.total_delay_seconds,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

    assert last_error is not None
    raise RetryError(
        f"Failed after {stats.attempts} attempts: {last_error}",
        attempts=stats.attempts,
        last_error=last_error,
    )


@runtime_checkable
class RetryStrategy(Protocol):
    """
    Protocol for strategies that retry a unit of work on concurrency conflicts.

    The operation must be safe to run again from scratch: each attempt opens
    its own transaction and re-reads whatever it compares against.
    """

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        Run operation, retrying when it raises a concurrency conflict.

        Raises:
            ConcurrencyExhaustedError: If every attempt conflicted
        """
        ...


class ExponentialBackoffRetryStrategy:
    """
    Retries optimistic concurrency conflicts with exponential backoff.

    Only ConcurrencyConflictError (a stale version or a unique-constraint
    violation on an allocated key) is retried. Any other error propagates
    on the first occurrence. When retries run out, a
    ConcurrencyExhaustedError is raised with the last conflict attached.

    Example:
        >>> strategy = ExponentialBackoffRetryStrategy(RetryConfig(max_retries=5))
        >>> number = await strategy.execute(
        ...     lambda: allocator.next_number(branch_id),
        ...     operation_name="sequence.next_number",
        ... )
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._stats = RetryStats()

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def stats(self) -> RetryStats:
        """Cumulative statistics across every execute() call."""
        return self._stats

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        try:
            result = await retry_async(
                self._counted(operation),
                config=self._config,
                retryable_exceptions=CONFLICT_EXCEPTIONS,
                operation_name=operation_name,
                sleep=self._timed_sleep,
            )
        except RetryError as e:
            raise ConcurrencyExhaustedError(operation_name, e.attempts, e.last_error) from e
        self._stats.successes += 1
        return result

    def _counted(self, operation: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
        async def attempt() -> T:
            self._stats.attempts += 1
            try:
                return await operation()
            except Exception as e:
                self._stats.failures += 1
                self._stats.last_error = str(e)
                raise

        return attempt

    async def _timed_sleep(self, delay: float) -> None:
        self._stats.total_delay_seconds += delay
        await self._sleep(delay)


class CircuitBreaker:
    """
    Circuit breaker for preventing cascading failures.

    States:
        CLOSED: Normal operation, requests flow through
        OPEN: Too many consecutive failures, requests are blocked
        HALF_OPEN: Testing if service recovered

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5))
        >>> exists = await breaker.execute(
        ...     lambda: directory.customer_exists(customer_id),
        ...     operation_name="customer_exists",
        ... )
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    async def _check_state(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN and self._last_failure_time is not None:
                elapsed = self._clock() - self._last_failure_time
                if elapsed >= self.config.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_calls = 0
                    logger.info(
                        "Circuit breaker entering half-open state",
                        extra={"elapsed_seconds": elapsed},
                    )

    async def _can_execute(self) -> bool:
        await self._check_state()

        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls < self.config.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
                return False

            return False

    async def record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._half_open_calls = 0
                logger.info("Circuit breaker closed after successful recovery")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit breaker reopened after failed recovery attempt",
                    extra={"failure_count": self._failure_count},
                )
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        "Circuit breaker opened due to failure threshold",
                        extra={
                            "failure_count": self._failure_count,
                            "threshold": self.config.failure_threshold,
                        },
                    )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        Execute an operation through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: If operation fails
        """
        if not await self._can_execute():
            recovery_time = (
                self._last_failure_time + self.config.recovery_timeout
                if self._last_failure_time
                else self._clock() + self.config.recovery_timeout
            )
            raise CircuitBreakerOpenError(
                f"Circuit breaker is open for {operation_name}",
                recovery_time=recovery_time,
            )

        try:
            result = await operation()
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0
        logger.info("Circuit breaker reset to closed state")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "half_open_calls": self._half_open_calls,
        }


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "CONFLICT_EXCEPTIONS",
    "CircuitState",
    "RetryConfig",
    "RetryStats",
    "CircuitBreakerConfig",
    "RetryError",
    "CircuitBreakerOpenError",
    "calculate_backoff",
    "retry_async",
    "RetryStrategy",
    "ExponentialBackoffRetryStrategy",
    "CircuitBreaker",
]
