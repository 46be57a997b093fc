"""
External collaborators consulted by the command handlers.

Only the interface boundary lives here: the customer directory (CRM) and
stock reservation (inventory) protocols, in-memory implementations for
tests and local runs, and wrappers that add retry with exponential backoff
and a circuit breaker around any real client.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar, runtime_checkable
from uuid import UUID

from salesledger.config import CollaboratorConfig
from salesledger.retry import (
    TRANSIENT_EXCEPTIONS,
    CircuitBreaker,
    SleepFunc,
    retry_async,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class CustomerDirectory(Protocol):
    """Looks up customers in the CRM."""

    async def customer_exists(self, customer_id: UUID) -> bool: ...


@runtime_checkable
class StockReservation(Protocol):
    """Reserves and releases product stock in the inventory."""

    async def reserve(self, product_id: UUID, quantity: int) -> bool:
        """
        Reserve units of a product.

        Returns:
            True if the units were reserved, False if stock is insufficient
        """
        ...

    async def release(self, product_id: UUID, quantity: int) -> None:
        """Return previously reserved units to stock."""
        ...


class InMemoryCustomerDirectory:
    """
    In-memory customer directory.

    Args:
        customer_ids: Known customers. None means every customer exists.
    """

    def __init__(self, customer_ids: set[UUID] | None = None) -> None:
        self._customer_ids = None if customer_ids is None else set(customer_ids)

    def register(self, customer_id: UUID) -> None:
        if self._customer_ids is None:
            self._customer_ids = set()
        self._customer_ids.add(customer_id)

    async def customer_exists(self, customer_id: UUID) -> bool:
        return self._customer_ids is None or customer_id in self._customer_ids


class InMemoryStockReservation:
    """
    In-memory stock levels.

    Products without a configured level have unlimited stock.

    Example:
        >>> stock = InMemoryStockReservation({product_id: 10})
        >>> await stock.reserve(product_id, 4)
        True
        >>> stock.available(product_id)
        6
    """

    def __init__(self, levels: dict[UUID, int] | None = None) -> None:
        self._levels: dict[UUID, int] = dict(levels or {})
        self._reserved: dict[UUID, int] = {}
        self._lock = asyncio.Lock()

    def available(self, product_id: UUID) -> int | None:
        """Units left for a product, or None when stock is unlimited."""
        return self._levels.get(product_id)

    def reserved(self, product_id: UUID) -> int:
        return self._reserved.get(product_id, 0)

    async def reserve(self, product_id: UUID, quantity: int) -> bool:
        async with self._lock:
            level = self._levels.get(product_id)
            if level is not None:
                if level < quantity:
                    logger.warning(
                        "Insufficient stock for product %s: requested %d, available %d",
                        product_id,
                        quantity,
                        level,
                        extra={"product_id": str(product_id), "requested": quantity},
                    )
                    return False
                self._levels[product_id] = level - quantity
            self._reserved[product_id] = self._reserved.get(product_id, 0) + quantity
            return True

    async def release(self, product_id: UUID, quantity: int) -> None:
        async with self._lock:
            if product_id in self._levels:
                self._levels[product_id] += quantity
            self._reserved[product_id] = max(0, self._reserved.get(product_id, 0) - quantity)


class _ResilientCaller:
    """Runs calls through retry-with-backoff around a shared circuit breaker."""

    def __init__(
        self,
        config: CollaboratorConfig | None,
        breaker: CircuitBreaker | None,
        sleep: SleepFunc,
    ) -> None:
        self.config = config or CollaboratorConfig()
        self.breaker = breaker or CircuitBreaker(self.config.circuit_breaker)
        self._sleep = sleep

    async def call(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        # Every attempt counts against the breaker; an open breaker is not retried
        return await retry_async(
            lambda: self.breaker.execute(operation, operation_name=operation_name),
            config=self.config.retry,
            retryable_exceptions=TRANSIENT_EXCEPTIONS,
            operation_name=operation_name,
            sleep=self._sleep,
        )


class ResilientCustomerDirectory:
    """
    CustomerDirectory wrapper adding retry and a circuit breaker.

    Transient errors (connection errors, timeouts) are retried three times
    with 2, 4 and 8 second waits by default. Five consecutive failures open
    the circuit for 30 seconds; calls made while it is open fail fast with
    CircuitBreakerOpenError.
    """

    def __init__(
        self,
        inner: CustomerDirectory,
        config: CollaboratorConfig | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._caller = _ResilientCaller(config, breaker, sleep)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._caller.breaker

    async def customer_exists(self, customer_id: UUID) -> bool:
        return await self._caller.call(
            lambda: self._inner.customer_exists(customer_id),
            operation_name="customer_directory.customer_exists",
        )


class ResilientStockReservation:
    """StockReservation wrapper adding retry and a circuit breaker."""

    def __init__(
        self,
        inner: StockReservation,
        config: CollaboratorConfig | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._caller = _ResilientCaller(config, breaker, sleep)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._caller.breaker

    async def reserve(self, product_id: UUID, quantity: int) -> bool:
        return await self._caller.call(
            lambda: self._inner.reserve(product_id, quantity),
            operation_name="stock_reservation.reserve",
        )

    async def release(self, product_id: UUID, quantity: int) -> None:
        await self._caller.call(
            lambda: self._inner.release(product_id, quantity),
            operation_name="stock_reservation.release",
        )


__all__ = [
    "CustomerDirectory",
    "StockReservation",
    "InMemoryCustomerDirectory",
    "InMemoryStockReservation",
    "ResilientCustomerDirectory",
    "ResilientStockReservation",
]
