"""
salesledger - Sales ledger with a transactional outbox.

This library provides:
- Sale aggregate with tiered quantity discounts
- Per-partition sale numbering with compare-and-swap allocation
- Sale, outbox, idempotency and sequence repositories (PostgreSQL, SQLite,
  In-Memory)
- Outbox dispatcher delivering events to in-process subscribers
- Idempotent command handlers with retry on concurrency conflicts
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("salesledger")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Configuration
from salesledger.config import (
    CollaboratorConfig,
    DispatcherConfig,
    IdempotencyConfig,
    SalesLedgerSettings,
)

# Outbox dispatcher
from salesledger.dispatcher import DispatchStats, OutboxDispatcher

# Domain
from salesledger.domain import (
    DEFAULT_TIERS,
    DiscountPolicy,
    DiscountTier,
    Sale,
    SaleItem,
    SaleStatus,
)

# Events
from salesledger.events import (
    SALE_EVENT_REGISTRY,
    DomainEvent,
    EventRegistry,
    ItemCancelled,
    SaleCancelled,
    SaleCreated,
    SaleModified,
    UnknownEventTypeError,
)
from salesledger.exceptions import (
    ConcurrencyConflictError,
    ConcurrencyExhaustedError,
    DiscountPolicyViolation,
    InvalidSaleError,
    SaleNotFoundError,
    SalesLedgerError,
    SerializationError,
)

# Command handlers
from salesledger.handlers import (
    CancelSale,
    ConfirmSale,
    CreateSale,
    GetSale,
    ListSales,
    SaleCommandHandler,
    SaleItemInput,
    SaleItemSummary,
    SaleQueryHandler,
    SaleSummary,
    SaleSummaryPage,
    UpdateSale,
)

# External collaborators
from salesledger.integrations import (
    CustomerDirectory,
    InMemoryCustomerDirectory,
    InMemoryStockReservation,
    ResilientCustomerDirectory,
    ResilientStockReservation,
    StockReservation,
)

# Repositories
from salesledger.repositories import (
    IdempotencyRepository,
    InMemoryIdempotencyRepository,
    InMemoryOutboxRepository,
    InMemorySaleRepository,
    InMemorySequenceAllocator,
    OutboxRecord,
    OutboxRepository,
    OutboxStatus,
    PostgreSQLIdempotencyRepository,
    PostgreSQLOutboxRepository,
    PostgreSQLSaleRepository,
    PostgreSQLSequenceAllocator,
    SalePage,
    SaleQuery,
    SaleRepository,
    SequenceAllocator,
    SQLiteDatabase,
    SQLiteIdempotencyRepository,
    SQLiteOutboxRepository,
    SQLiteSaleRepository,
    SQLiteSequenceAllocator,
    create_postgresql_schema,
    create_sqlite_schema,
)
from salesledger.result import Result

# Retry and circuit breaker
from salesledger.retry import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    ExponentialBackoffRetryStrategy,
    RetryConfig,
    RetryStrategy,
)

# Subscribers
from salesledger.subscribers import (
    CrmProjection,
    EventSubscriber,
    InProcessEventPublisher,
    InventoryProjection,
    SubscriberResult,
)

__all__ = [
    "__version__",
    # Configuration
    "SalesLedgerSettings",
    "DispatcherConfig",
    "IdempotencyConfig",
    "CollaboratorConfig",
    # Domain
    "Sale",
    "SaleItem",
    "SaleStatus",
    "DiscountPolicy",
    "DiscountTier",
    "DEFAULT_TIERS",
    "Result",
    # Events
    "DomainEvent",
    "SaleCreated",
    "SaleModified",
    "SaleCancelled",
    "ItemCancelled",
    "EventRegistry",
    "SALE_EVENT_REGISTRY",
    "UnknownEventTypeError",
    # Exceptions
    "SalesLedgerError",
    "InvalidSaleError",
    "DiscountPolicyViolation",
    "SaleNotFoundError",
    "ConcurrencyConflictError",
    "ConcurrencyExhaustedError",
    "SerializationError",
    # Repositories
    "SaleRepository",
    "SaleQuery",
    "SalePage",
    "InMemorySaleRepository",
    "SQLiteSaleRepository",
    "PostgreSQLSaleRepository",
    "OutboxRecord",
    "OutboxStatus",
    "OutboxRepository",
    "InMemoryOutboxRepository",
    "SQLiteOutboxRepository",
    "PostgreSQLOutboxRepository",
    "IdempotencyRepository",
    "InMemoryIdempotencyRepository",
    "SQLiteIdempotencyRepository",
    "PostgreSQLIdempotencyRepository",
    "SequenceAllocator",
    "InMemorySequenceAllocator",
    "SQLiteSequenceAllocator",
    "PostgreSQLSequenceAllocator",
    "SQLiteDatabase",
    "create_sqlite_schema",
    "create_postgresql_schema",
    # Retry
    "RetryConfig",
    "RetryStrategy",
    "ExponentialBackoffRetryStrategy",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpenError",
    # Handlers
    "SaleCommandHandler",
    "SaleQueryHandler",
    "CreateSale",
    "UpdateSale",
    "ConfirmSale",
    "CancelSale",
    "GetSale",
    "ListSales",
    "SaleItemInput",
    "SaleSummary",
    "SaleItemSummary",
    "SaleSummaryPage",
    # Collaborators
    "CustomerDirectory",
    "StockReservation",
    "InMemoryCustomerDirectory",
    "InMemoryStockReservation",
    "ResilientCustomerDirectory",
    "ResilientStockReservation",
    # Dispatch
    "OutboxDispatcher",
    "DispatchStats",
    "EventSubscriber",
    "SubscriberResult",
    "InProcessEventPublisher",
    "CrmProjection",
    "InventoryProjection",
]
