"""
Unit tests for collaborator implementations and their resilient wrappers.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

import pytest

from salesledger import (
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    CustomerDirectory,
    InMemoryCustomerDirectory,
    InMemoryStockReservation,
    ResilientCustomerDirectory,
    ResilientStockReservation,
    RetryConfig,
    StockReservation,
)
from salesledger.config import CollaboratorConfig
from salesledger.retry import RetryError


class FlakyDirectory:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or ConnectionError("crm unreachable")
        self.calls = 0

    async def customer_exists(self, customer_id: UUID) -> bool:
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        return True


class TestInMemoryCustomerDirectory:
    async def test_everyone_exists_by_default(self) -> None:
        directory = InMemoryCustomerDirectory()

        assert await directory.customer_exists(uuid4())
        assert isinstance(directory, CustomerDirectory)

    async def test_known_customers_only(self, customer_id: UUID) -> None:
        directory = InMemoryCustomerDirectory({customer_id})

        assert await directory.customer_exists(customer_id)
        assert not await directory.customer_exists(uuid4())

    async def test_register(self, customer_id: UUID) -> None:
        directory = InMemoryCustomerDirectory(set())

        directory.register(customer_id)

        assert await directory.customer_exists(customer_id)


class TestInMemoryStockReservation:
    async def test_reserve_and_release(self, product_id: UUID) -> None:
        stock = InMemoryStockReservation({product_id: 10})

        assert await stock.reserve(product_id, 4)
        assert stock.available(product_id) == 6
        assert stock.reserved(product_id) == 4

        await stock.release(product_id, 4)
        assert stock.available(product_id) == 10
        assert stock.reserved(product_id) == 0

    async def test_insufficient_stock(self, product_id: UUID) -> None:
        stock = InMemoryStockReservation({product_id: 3})

        assert not await stock.reserve(product_id, 4)
        assert stock.available(product_id) == 3
        assert isinstance(stock, StockReservation)

    async def test_unlimited_when_not_configured(self, product_id: UUID) -> None:
        stock = InMemoryStockReservation()

        assert await stock.reserve(product_id, 1000)
        assert stock.available(product_id) is None


class TestResilientCustomerDirectory:
    async def test_transient_errors_retried_with_backoff(self, sleep_recorder: Any) -> None:
        inner = FlakyDirectory(failures=2)
        directory = ResilientCustomerDirectory(inner, sleep=sleep_recorder)

        assert await directory.customer_exists(uuid4())
        assert inner.calls == 3
        assert sleep_recorder.delays == [2.0, 4.0]
        assert directory.breaker.is_closed

    async def test_gives_up_after_three_retries(self, sleep_recorder: Any) -> None:
        inner = FlakyDirectory(failures=10)
        directory = ResilientCustomerDirectory(inner, sleep=sleep_recorder)

        with pytest.raises(RetryError):
            await directory.customer_exists(uuid4())

        assert inner.calls == 4
        assert sleep_recorder.delays == [2.0, 4.0, 8.0]

    async def test_non_transient_errors_not_retried(self, sleep_recorder: Any) -> None:
        inner = FlakyDirectory(failures=1, error=ValueError("bad customer id"))
        directory = ResilientCustomerDirectory(inner, sleep=sleep_recorder)

        with pytest.raises(ValueError):
            await directory.customer_exists(uuid4())
        assert inner.calls == 1

    async def test_open_circuit_fails_fast(self, sleep_recorder: Any) -> None:
        config = CollaboratorConfig(
            retry=RetryConfig(max_retries=0, initial_delay=1.0),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=2),
        )
        inner = FlakyDirectory(failures=10)
        directory = ResilientCustomerDirectory(inner, config=config, sleep=sleep_recorder)

        for _ in range(2):
            with pytest.raises(RetryError):
                await directory.customer_exists(uuid4())

        with pytest.raises(CircuitBreakerOpenError):
            await directory.customer_exists(uuid4())
        assert inner.calls == 2
        assert directory.breaker.is_open


class TestResilientStockReservation:
    async def test_delegates(self, product_id: UUID, sleep_recorder: Any) -> None:
        inner = InMemoryStockReservation({product_id: 5})
        stock = ResilientStockReservation(inner, sleep=sleep_recorder)

        assert await stock.reserve(product_id, 5)
        assert not await stock.reserve(product_id, 1)
        await stock.release(product_id, 2)

        assert inner.available(product_id) == 2
        assert sleep_recorder.delays == []
