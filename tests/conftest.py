"""
Shared pytest fixtures for the salesledger tests.

This module provides:
- Sample data fixtures (customer_id, partition_id, product_id)
- Sale fixtures (new_sale)
- Repository fixtures (outbox_repo, idempotency_repo, allocator, sale_repo)
- Collaborator fixtures (customers, stock)
- A sleep recorder so retry tests never actually wait
- SQLite fixtures (sqlite_db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from salesledger import (
    ExponentialBackoffRetryStrategy,
    InMemoryCustomerDirectory,
    InMemoryIdempotencyRepository,
    InMemoryOutboxRepository,
    InMemorySaleRepository,
    InMemorySequenceAllocator,
    InMemoryStockReservation,
    Sale,
    SQLiteDatabase,
    create_sqlite_schema,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that use the SQLite backend")


# ============================================================================
# Helpers
# ============================================================================


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def customer_id() -> UUID:
    """Provide a random customer ID."""
    return uuid4()


@pytest.fixture
def partition_id() -> UUID:
    """Provide a random partition (branch) ID."""
    return uuid4()


@pytest.fixture
def product_id() -> UUID:
    """Provide a random product ID."""
    return uuid4()


@pytest.fixture
def new_sale(customer_id: UUID, partition_id: UUID) -> Sale:
    """
    Provide a new, empty, unpersisted sale.

    Returns:
        An active Sale with number 0 and no items.
    """
    return Sale.create(customer_id, partition_id)


# =============================================================================
# Retry Fixtures
# =============================================================================


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    """Provide a fake sleep that records delays instead of waiting."""
    return SleepRecorder()


@pytest.fixture
def retry_strategy(sleep_recorder: SleepRecorder) -> ExponentialBackoffRetryStrategy:
    """Provide the default conflict retry strategy with instant backoff."""
    return ExponentialBackoffRetryStrategy(sleep=sleep_recorder)


# =============================================================================
# In-Memory Repository Fixtures
# =============================================================================


@pytest.fixture
def outbox_repo() -> InMemoryOutboxRepository:
    """Provide a fresh in-memory outbox repository."""
    return InMemoryOutboxRepository(enable_tracing=False)


@pytest.fixture
def idempotency_repo() -> InMemoryIdempotencyRepository:
    """Provide a fresh in-memory idempotency repository."""
    return InMemoryIdempotencyRepository(enable_tracing=False)


@pytest.fixture
def allocator() -> InMemorySequenceAllocator:
    """Provide a fresh in-memory sequence allocator."""
    return InMemorySequenceAllocator(enable_tracing=False)


@pytest.fixture
def sale_repo(
    outbox_repo: InMemoryOutboxRepository,
    allocator: InMemorySequenceAllocator,
    retry_strategy: ExponentialBackoffRetryStrategy,
) -> InMemorySaleRepository:
    """
    Provide an in-memory sale repository wired to the outbox and allocator fixtures.
    """
    return InMemorySaleRepository(
        outbox=outbox_repo,
        allocator=allocator,
        retry_strategy=retry_strategy,
        enable_tracing=False,
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def customers() -> InMemoryCustomerDirectory:
    """Provide a customer directory in which every customer exists."""
    return InMemoryCustomerDirectory()


@pytest.fixture
def stock() -> InMemoryStockReservation:
    """Provide stock levels with unlimited stock for every product."""
    return InMemoryStockReservation()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_db() -> AsyncGenerator[SQLiteDatabase, None]:
    """
    Provide a connected in-memory SQLite database with the schema created.

    The database is closed after the test.
    """
    async with SQLiteDatabase(":memory:") as db:
        await create_sqlite_schema(db.connection)
        yield db
