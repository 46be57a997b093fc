"""
Repository implementations for salesledger.

This module provides the persistence layer for:

- **Sales**: The Sale aggregate, written atomically with its events
- **Outbox**: Transactional outbox records awaiting delivery
- **Idempotency**: Processed request ids, for command deduplication
- **Sequences**: Per-partition sale number allocation (compare-and-swap)

Each repository type provides:
- A Protocol (interface) defining the contract
- PostgreSQL implementation for production use
- SQLite implementation for lightweight deployments
- In-memory implementation for testing
"""

from salesledger.repositories._database import SQLiteDatabase, execute_with_connection
from salesledger.repositories.idempotency import (
    IdempotencyRecord,
    IdempotencyRepository,
    InMemoryIdempotencyRepository,
    PostgreSQLIdempotencyRepository,
    SQLiteIdempotencyRepository,
)
from salesledger.repositories.outbox import (
    DEFAULT_MAX_RETRIES,
    InMemoryOutboxRepository,
    OutboxRecord,
    OutboxRepository,
    OutboxStats,
    OutboxStatus,
    PostgreSQLOutboxRepository,
    SQLiteOutboxRepository,
)
from salesledger.repositories.sales import (
    BaseSaleRepository,
    EventPublisher,
    InMemorySaleRepository,
    PostgreSQLSaleRepository,
    SalePage,
    SaleQuery,
    SaleRepository,
    SQLiteSaleRepository,
)
from salesledger.repositories.schema import create_postgresql_schema, create_sqlite_schema
from salesledger.repositories.sequence import (
    InMemorySequenceAllocator,
    PostgreSQLSequenceAllocator,
    SequenceAllocator,
    SequenceCounter,
    SQLiteSequenceAllocator,
)

__all__ = [
    # Database helpers
    "SQLiteDatabase",
    "execute_with_connection",
    "create_sqlite_schema",
    "create_postgresql_schema",
    # Sales
    "SaleRepository",
    "BaseSaleRepository",
    "SaleQuery",
    "SalePage",
    "EventPublisher",
    "InMemorySaleRepository",
    "SQLiteSaleRepository",
    "PostgreSQLSaleRepository",
    # Outbox
    "DEFAULT_MAX_RETRIES",
    "OutboxRecord",
    "OutboxStats",
    "OutboxStatus",
    "OutboxRepository",
    "InMemoryOutboxRepository",
    "SQLiteOutboxRepository",
    "PostgreSQLOutboxRepository",
    # Idempotency
    "IdempotencyRecord",
    "IdempotencyRepository",
    "InMemoryIdempotencyRepository",
    "SQLiteIdempotencyRepository",
    "PostgreSQLIdempotencyRepository",
    # Sequences
    "SequenceCounter",
    "SequenceAllocator",
    "InMemorySequenceAllocator",
    "SQLiteSequenceAllocator",
    "PostgreSQLSequenceAllocator",
]
