"""
Configuration classes for salesledger.

This module provides:
- DispatcherConfig: Polling and retry-cap settings for the outbox dispatcher
- IdempotencyConfig: Retention of idempotency records
- CollaboratorConfig: Retry and circuit breaker settings for external calls
- SalesLedgerSettings: All of the above plus the conflict retry policy,
  loadable from SALESLEDGER_* environment variables
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from salesledger.retry import CircuitBreakerConfig, RetryConfig

ENV_PREFIX = "SALESLEDGER_"


@dataclass(frozen=True)
class DispatcherConfig:
    """
    Configuration for the outbox dispatcher loop.

    Attributes:
        batch_size: Maximum number of pending records fetched per cycle
        max_retries: Records whose retry_count reached this cap are no longer
            polled and are left in the failed state
        poll_interval: Seconds to sleep between cycles
        error_cooldown: Seconds to sleep after a loop-level error
        shutdown_timeout: Seconds stop() waits for the current cycle

    Example:
        >>> config = DispatcherConfig(batch_size=100, poll_interval=2.0)
    """

    batch_size: int = 50
    max_retries: int = 5
    poll_interval: float = 10.0
    error_cooldown: float = 30.0
    shutdown_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(
                f"batch_size must be positive, got {self.batch_size}. "
                "Use a value like 50 (default)."
            )

        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}.")

        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}.")

        if self.error_cooldown <= 0:
            raise ValueError(f"error_cooldown must be positive, got {self.error_cooldown}.")

        if self.shutdown_timeout <= 0:
            raise ValueError(f"shutdown_timeout must be positive, got {self.shutdown_timeout}.")


@dataclass(frozen=True)
class IdempotencyConfig:
    """
    Configuration for idempotency records.

    Attributes:
        ttl: How long a processed request id is remembered
    """

    ttl: timedelta = timedelta(days=7)

    def __post_init__(self) -> None:
        if self.ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive, got {self.ttl}.")


@dataclass(frozen=True)
class CollaboratorConfig:
    """
    Resilience settings for calls to external collaborators.

    Defaults: three retries waiting 2, 4 and 8 seconds, and a circuit that
    opens after five consecutive failures and half-opens after 30 seconds.
    """

    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=3, initial_delay=2.0, max_delay=30.0)
    )
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)


@dataclass(frozen=True)
class SalesLedgerSettings:
    """
    Bundle of every tunable used when wiring the application.

    Attributes:
        conflict_retry: Retry policy for sequence/version conflicts
        dispatcher: Outbox dispatcher settings
        idempotency: Idempotency record retention
        collaborators: Retry/circuit breaker settings for external calls
        enable_tracing: Whether components create OpenTelemetry spans
    """

    conflict_retry: RetryConfig = field(default_factory=RetryConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    collaborators: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    enable_tracing: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SalesLedgerSettings:
        """
        Build settings from SALESLEDGER_* environment variables.

        Unset variables keep their defaults. Recognised variables:
        SALESLEDGER_RETRY_MAX_RETRIES, SALESLEDGER_RETRY_INITIAL_DELAY_MS,
        SALESLEDGER_OUTBOX_BATCH_SIZE, SALESLEDGER_OUTBOX_MAX_RETRIES,
        SALESLEDGER_OUTBOX_POLL_INTERVAL, SALESLEDGER_OUTBOX_ERROR_COOLDOWN,
        SALESLEDGER_IDEMPOTENCY_TTL_DAYS, SALESLEDGER_ENABLE_TRACING.

        Raises:
            ValueError: If a variable cannot be parsed or fails validation
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        retry_defaults = RetryConfig()
        retry = RetryConfig(
            max_retries=_int(get("RETRY_MAX_RETRIES"), retry_defaults.max_retries),
            initial_delay=_int(get("RETRY_INITIAL_DELAY_MS"), 50) / 1000,
        )

        dispatcher_defaults = DispatcherConfig()
        dispatcher = DispatcherConfig(
            batch_size=_int(get("OUTBOX_BATCH_SIZE"), dispatcher_defaults.batch_size),
            max_retries=_int(get("OUTBOX_MAX_RETRIES"), dispatcher_defaults.max_retries),
            poll_interval=_float(get("OUTBOX_POLL_INTERVAL"), dispatcher_defaults.poll_interval),
            error_cooldown=_float(
                get("OUTBOX_ERROR_COOLDOWN"), dispatcher_defaults.error_cooldown
            ),
        )

        idempotency = IdempotencyConfig(ttl=timedelta(days=_int(get("IDEMPOTENCY_TTL_DAYS"), 7)))

        tracing = get("ENABLE_TRACING")
        enable_tracing = True if tracing is None else _bool(tracing)

        return cls(
            conflict_retry=retry,
            dispatcher=dispatcher,
            idempotency=idempotency,
            enable_tracing=enable_tracing,
        )


def _int(value: str | None, default: int) -> int:
    return default if value is None else int(value)


def _float(value: str | None, default: float) -> float:
    return default if value is None else float(value)


def _bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Cannot interpret {value!r} as a boolean")


__all__ = [
    "DispatcherConfig",
    "IdempotencyConfig",
    "CollaboratorConfig",
    "SalesLedgerSettings",
    "ENV_PREFIX",
]
