"""
Sale repositories.

A repository persists the Sale aggregate together with the events it
recorded. Both writes happen in one transaction:

- add(): allocate the partition's next sale number, assign it (which
  records SaleCreated), insert the sale and its items, append every pending
  event to the outbox. The whole unit is retried on concurrency conflicts.
- update(): version-checked update of the sale row, replace its items,
  append pending events to the outbox. A stale version raises
  ConcurrencyConflictError; callers retry by reloading the sale.

After commit the aggregate's event buffer is cleared and, if an
EventPublisher is configured, the committed events are handed to it.
Delivery to other subsystems does not depend on the publisher: the
OutboxDispatcher delivers every committed event regardless.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

import aiosqlite
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from salesledger.domain.discount import DiscountPolicy
from salesledger.domain.sale import Sale, SaleItem, SaleStatus
from salesledger.events.base import DomainEvent
from salesledger.exceptions import (
    ConcurrencyConflictError,
    InvalidSaleError,
    SaleNotFoundError,
)
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_EVENT_COUNT,
    ATTR_PARTITION_ID,
    ATTR_SALE_ID,
    ATTR_SALE_NUMBER,
    ATTR_VERSION,
)
from salesledger.repositories._database import (
    SQLiteDatabase,
    parse_sqlite_timestamp,
    to_sqlite_timestamp,
)
from salesledger.repositories.outbox import (
    InMemoryOutboxRepository,
    PostgreSQLOutboxRepository,
    SQLiteOutboxRepository,
)
from salesledger.repositories.sequence import (
    InMemorySequenceAllocator,
    PostgreSQLSequenceAllocator,
    SQLiteSequenceAllocator,
)
from salesledger.retry import ExponentialBackoffRetryStrategy, RetryStrategy

logger = logging.getLogger(__name__)

SALE_RESOURCE = "sale"
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class SaleQuery:
    """
    Filters and paging for listing sales.

    All filters are optional and combined with AND. The date range is
    inclusive on both ends. Results are ordered by created_at, newest first.
    """

    customer_id: UUID | None = None
    partition_id: UUID | None = None
    status: SaleStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    page_size: int = 10

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {self.page_size}"
            )
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def matches(self, sale: Sale) -> bool:
        """Whether a sale passes every filter."""
        if self.customer_id is not None and sale.customer_id != self.customer_id:
            return False
        if self.partition_id is not None and sale.partition_id != self.partition_id:
            return False
        if self.status is not None and sale.status is not self.status:
            return False
        if self.date_from is not None and sale.created_at < self.date_from:
            return False
        return not (self.date_to is not None and sale.created_at > self.date_to)


@dataclass(frozen=True)
class SalePage:
    """One page of a sale listing."""

    items: list[Sale] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        return -(-self.total_count // self.page_size) if self.total_count else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@runtime_checkable
class EventPublisher(Protocol):
    """Receives events right after the transaction that produced them commits."""

    async def publish(self, events: Sequence[DomainEvent]) -> None: ...


@runtime_checkable
class SaleRepository(Protocol):
    """
    Protocol for sale repositories.
    """

    async def get(self, sale_id: UUID) -> Sale | None:
        """Load a sale, or None if it does not exist."""
        ...

    async def add(self, sale: Sale) -> int:
        """
        Persist a new sale.

        Returns:
            The sale number allocated in the sale's partition

        Raises:
            ConcurrencyExhaustedError: If allocation kept conflicting
        """
        ...

    async def update(self, sale: Sale) -> None:
        """
        Persist changes to an existing sale.

        Raises:
            SaleNotFoundError: If the sale does not exist
            ConcurrencyConflictError: If the sale was modified since it was loaded
        """
        ...

    async def list(self, query: SaleQuery) -> SalePage:
        """List sales matching a query."""
        ...


class BaseSaleRepository(ABC):
    """
    Shared add/update flow; subclasses provide one transactional attempt.

    add() snapshots the aggregate before the first attempt and rolls it
    back before every retry, so each attempt assigns the number and records
    SaleCreated exactly once. If every attempt fails, the aggregate is left
    as it was before add() was called.
    """

    _db_system: str = "unknown"

    def __init__(
        self,
        retry_strategy: RetryStrategy | None = None,
        publisher: EventPublisher | None = None,
        discount_policy: DiscountPolicy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._retry = retry_strategy or ExponentialBackoffRetryStrategy()
        self._publisher = publisher
        self._policy = discount_policy

    async def add(self, sale: Sale) -> int:
        if sale.number != 0:
            raise InvalidSaleError(f"sale {sale.id} was already persisted")

        with self._tracer.span(
            "salesledger.sale_repository.add",
            {
                ATTR_SALE_ID: str(sale.id),
                ATTR_PARTITION_ID: str(sale.partition_id),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ) as span:
            memento = sale.memento()

            async def attempt() -> None:
                sale.restore(memento)
                await self._insert(sale)

            try:
                await self._retry.execute(attempt, operation_name="sale_repository.add")
            except BaseException:
                sale.restore(memento)
                raise

            sale.mark_persisted(1)
            events = sale.clear_events()
            if span:
                span.set_attribute(ATTR_SALE_NUMBER, sale.number)
                span.set_attribute(ATTR_EVENT_COUNT, len(events))

        logger.info(
            "Persisted sale %s with number %d",
            sale.id,
            sale.number,
            extra={
                "sale_id": str(sale.id),
                "sale_number": sale.number,
                "partition_id": str(sale.partition_id),
                "event_count": len(events),
            },
        )
        await self._publish(events)
        return sale.number

    async def update(self, sale: Sale) -> None:
        if sale.number == 0:
            raise InvalidSaleError(f"sale {sale.id} has not been persisted yet")

        with self._tracer.span(
            "salesledger.sale_repository.update",
            {
                ATTR_SALE_ID: str(sale.id),
                ATTR_VERSION: sale.version,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            await self._update(sale)
            sale.mark_persisted(sale.version + 1)
            events = sale.clear_events()

        logger.debug(
            "Updated sale %s to version %d",
            sale.id,
            sale.version,
            extra={"sale_id": str(sale.id), "version": sale.version, "event_count": len(events)},
        )
        await self._publish(events)

    async def _publish(self, events: list[DomainEvent]) -> None:
        if self._publisher is None or not events:
            return
        try:
            await self._publisher.publish(events)
        except Exception as e:
            # Already committed; the outbox still delivers these events
            logger.error(
                "Post-commit publish failed: %s",
                e,
                exc_info=True,
                extra={"event_ids": [str(event.event_id) for event in events]},
            )

    def _build_sale(
        self,
        sale_id: UUID,
        number: int,
        customer_id: UUID,
        partition_id: UUID,
        status: str,
        created_at: datetime,
        version: int,
        items: list[SaleItem],
    ) -> Sale:
        return Sale(
            sale_id,
            customer_id,
            partition_id,
            number=number,
            status=SaleStatus(status),
            created_at=created_at,
            items=items,
            version=version,
            discount_policy=self._policy,
        )

    @abstractmethod
    async def _insert(self, sale: Sale) -> None:
        """One transactional attempt: allocate, assign, insert, capture events."""

    @abstractmethod
    async def _update(self, sale: Sale) -> None:
        """Version-checked update, item replacement and event capture."""

    @abstractmethod
    async def get(self, sale_id: UUID) -> Sale | None: ...

    @abstractmethod
    async def list(self, query: SaleQuery) -> SalePage: ...


def _uuid(value: Any) -> UUID:
    return value if type(value) is UUID else UUID(str(value))


def _conflict(sale: Sale, actual_version: int | None) -> ConcurrencyConflictError:
    return ConcurrencyConflictError(
        SALE_RESOURCE,
        sale.id,
        expected_version=sale.version,
        actual_version=actual_version,
    )


@dataclass(frozen=True)
class _StoredSale:
    sale_id: UUID
    number: int
    customer_id: UUID
    partition_id: UUID
    status: str
    created_at: datetime
    version: int
    items: tuple[SaleItem, ...]

    @classmethod
    def of(cls, sale: Sale, version: int) -> _StoredSale:
        return cls(
            sale.id,
            sale.number,
            sale.customer_id,
            sale.partition_id,
            sale.status.value,
            sale.created_at,
            version,
            sale.items,
        )


class InMemorySaleRepository(BaseSaleRepository):
    """
    In-memory implementation of sale repository for testing.

    Stores immutable snapshots, so callers never share aggregate instances
    with the store.

    Example:
        >>> outbox = InMemoryOutboxRepository()
        >>> repo = InMemorySaleRepository(outbox=outbox)
        >>> number = await repo.add(sale)
    """

    _db_system = "memory"

    def __init__(
        self,
        outbox: InMemoryOutboxRepository | None = None,
        allocator: InMemorySequenceAllocator | None = None,
        retry_strategy: RetryStrategy | None = None,
        publisher: EventPublisher | None = None,
        discount_policy: DiscountPolicy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(retry_strategy, publisher, discount_policy, tracer, enable_tracing)
        self.outbox = outbox or InMemoryOutboxRepository(tracer=self._tracer)
        self.allocator = allocator or InMemorySequenceAllocator(tracer=self._tracer)
        self._sales: dict[UUID, _StoredSale] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def get(self, sale_id: UUID) -> Sale | None:
        async with self._lock:
            stored = self._sales.get(sale_id)
        return self._from_stored(stored) if stored else None

    async def _insert(self, sale: Sale) -> None:
        number = await self.allocator.next_number(sale.partition_id)
        sale.assign_number(number)
        async with self._lock:
            if sale.id in self._sales:
                raise InvalidSaleError(f"sale {sale.id} already exists")
            if any(
                s.partition_id == sale.partition_id and s.number == number
                for s in self._sales.values()
            ):
                raise ConcurrencyConflictError(SALE_RESOURCE, sale.partition_id)
            self._sales[sale.id] = _StoredSale.of(sale, version=1)
            try:
                await self.outbox.add_events(sale.uncommitted_events)
            except Exception:
                del self._sales[sale.id]
                raise

    async def _update(self, sale: Sale) -> None:
        async with self._lock:
            stored = self._sales.get(sale.id)
            if stored is None:
                raise SaleNotFoundError(sale.id)
            if stored.version != sale.version:
                raise _conflict(sale, stored.version)
            self._sales[sale.id] = _StoredSale.of(sale, version=stored.version + 1)
            try:
                await self.outbox.add_events(sale.uncommitted_events)
            except Exception:
                self._sales[sale.id] = stored
                raise

    async def list(self, query: SaleQuery) -> SalePage:
        async with self._lock:
            stored = list(self._sales.values())
        matching = [sale for sale in map(self._from_stored, stored) if query.matches(sale)]
        matching.sort(key=lambda s: s.created_at, reverse=True)
        return SalePage(
            items=matching[query.offset : query.offset + query.page_size],
            total_count=len(matching),
            page=query.page,
            page_size=query.page_size,
        )

    def _from_stored(self, stored: _StoredSale) -> Sale:
        return self._build_sale(
            stored.sale_id,
            stored.number,
            stored.customer_id,
            stored.partition_id,
            stored.status,
            stored.created_at,
            stored.version,
            list(stored.items),
        )

    async def clear(self) -> None:
        """Clear all sales. Useful for test setup/teardown."""
        async with self._lock:
            self._sales.clear()


class SQLiteSaleRepository(BaseSaleRepository):
    """
    SQLite implementation of sale repository.

    The sale rows, the sequence counter and the outbox records share one
    SQLiteDatabase transaction per attempt.

    SQLite-specific adaptations:
    - UUIDs stored as TEXT
    - Prices and discounts stored as TEXT to keep Decimal precision
    - Timestamps stored as ISO 8601 UTC TEXT (lexicographically sortable)

    Example:
        >>> async with SQLiteDatabase("sales.db") as db:
        ...     await create_sqlite_schema(db.connection)
        ...     repo = SQLiteSaleRepository(db)
        ...     number = await repo.add(sale)
    """

    _db_system = "sqlite"

    def __init__(
        self,
        database: SQLiteDatabase,
        outbox: SQLiteOutboxRepository | None = None,
        allocator: SQLiteSequenceAllocator | None = None,
        retry_strategy: RetryStrategy | None = None,
        publisher: EventPublisher | None = None,
        discount_policy: DiscountPolicy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(retry_strategy, publisher, discount_policy, tracer, enable_tracing)
        self._db = database
        self.outbox = outbox or SQLiteOutboxRepository(database, tracer=self._tracer)
        self.allocator = allocator or SQLiteSequenceAllocator(database, tracer=self._tracer)

    async def get(self, sale_id: UUID) -> Sale | None:
        with self._tracer.span(
            "salesledger.sale_repository.get",
            {ATTR_SALE_ID: str(sale_id), ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """
                    SELECT id, number, customer_id, partition_id, status, created_at, version
                    FROM sales
                    WHERE id = ?
                    """,
                    (str(sale_id),),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                items = await self._load_items(conn, [str(sale_id)])

            return self._row_to_sale(row, items.get(str(sale_id), []))

    async def _insert(self, sale: Sale) -> None:
        async with self._db.transaction() as conn:
            number = await self.allocator.next_number(sale.partition_id, connection=conn)
            sale.assign_number(number)
            try:
                await conn.execute(
                    """
                    INSERT INTO sales
                        (id, number, customer_id, partition_id, status, created_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, 1)
                    """,
                    (
                        str(sale.id),
                        sale.number,
                        str(sale.customer_id),
                        str(sale.partition_id),
                        sale.status.value,
                        to_sqlite_timestamp(sale.created_at),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                error_str = str(e).lower()
                if "unique" in error_str and "number" in error_str:
                    # Another writer already stored this partition number
                    raise ConcurrencyConflictError(SALE_RESOURCE, sale.partition_id) from e
                raise
            await self._insert_items(conn, sale)
            await self.outbox.add_events(sale.uncommitted_events, connection=conn)

    async def _update(self, sale: Sale) -> None:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE sales
                SET status = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (sale.status.value, str(sale.id), sale.version),
            )
            if cursor.rowcount == 0:
                cursor = await conn.execute(
                    "SELECT version FROM sales WHERE id = ?", (str(sale.id),)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise SaleNotFoundError(sale.id)
                raise _conflict(sale, row[0])

            await conn.execute("DELETE FROM sale_items WHERE sale_id = ?", (str(sale.id),))
            await self._insert_items(conn, sale)
            await self.outbox.add_events(sale.uncommitted_events, connection=conn)

    async def list(self, query: SaleQuery) -> SalePage:
        with self._tracer.span(
            "salesledger.sale_repository.list",
            {"page": query.page, "page_size": query.page_size, ATTR_DB_SYSTEM: "sqlite"},
        ):
            conditions: list[str] = []
            params: list[Any] = []
            if query.customer_id is not None:
                conditions.append("customer_id = ?")
                params.append(str(query.customer_id))
            if query.partition_id is not None:
                conditions.append("partition_id = ?")
                params.append(str(query.partition_id))
            if query.status is not None:
                conditions.append("status = ?")
                params.append(query.status.value)
            if query.date_from is not None:
                conditions.append("created_at >= ?")
                params.append(to_sqlite_timestamp(query.date_from))
            if query.date_to is not None:
                conditions.append("created_at <= ?")
                params.append(to_sqlite_timestamp(query.date_to))
            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            async with self._db.transaction() as conn:
                cursor = await conn.execute(f"SELECT COUNT(*) FROM sales {where}", params)
                count_row = await cursor.fetchone()
                total_count = count_row[0] if count_row else 0

                cursor = await conn.execute(
                    f"""
                    SELECT id, number, customer_id, partition_id, status, created_at, version
                    FROM sales
                    {where}
                    ORDER BY created_at DESC, id
                    LIMIT ? OFFSET ?
                    """,
                    [*params, query.page_size, query.offset],
                )
                rows = list(await cursor.fetchall())
                items = await self._load_items(conn, [str(row[0]) for row in rows])

            return SalePage(
                items=[self._row_to_sale(row, items.get(str(row[0]), [])) for row in rows],
                total_count=total_count,
                page=query.page,
                page_size=query.page_size,
            )

    @staticmethod
    async def _insert_items(conn: aiosqlite.Connection, sale: Sale) -> None:
        await conn.executemany(
            """
            INSERT INTO sale_items
                (sale_id, product_id, position, quantity, unit_price, discount)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    str(sale.id),
                    str(item.product_id),
                    position,
                    item.quantity,
                    str(item.unit_price),
                    str(item.discount),
                )
                for position, item in enumerate(sale.items)
            ],
        )

    @staticmethod
    async def _load_items(
        conn: aiosqlite.Connection, sale_ids: list[str]
    ) -> dict[str, list[SaleItem]]:
        if not sale_ids:
            return {}
        placeholders = ", ".join("?" for _ in sale_ids)
        cursor = await conn.execute(
            f"""
            SELECT sale_id, product_id, quantity, unit_price, discount
            FROM sale_items
            WHERE sale_id IN ({placeholders})
            ORDER BY sale_id, position
            """,
            sale_ids,
        )
        items: dict[str, list[SaleItem]] = {}
        for row in await cursor.fetchall():
            items.setdefault(str(row[0]), []).append(
                SaleItem(
                    product_id=UUID(str(row[1])),
                    quantity=row[2],
                    unit_price=Decimal(str(row[3])),
                    discount=Decimal(str(row[4])),
                )
            )
        return items

    def _row_to_sale(self, row: Sequence[Any], items: list[SaleItem]) -> Sale:
        created_at = parse_sqlite_timestamp(row[5])
        assert created_at is not None
        return self._build_sale(
            UUID(str(row[0])),
            row[1],
            UUID(str(row[2])),
            UUID(str(row[3])),
            row[4],
            created_at,
            row[6],
            items,
        )


class PostgreSQLSaleRepository(BaseSaleRepository):
    """
    PostgreSQL implementation of sale repository.

    Each add()/update() attempt runs in its own engine.begin() transaction;
    the sequence allocator and outbox writer are bound to that connection.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> repo = PostgreSQLSaleRepository(engine, publisher=publisher)
        >>> number = await repo.add(sale)
    """

    _db_system = "postgresql"

    def __init__(
        self,
        engine: AsyncEngine,
        retry_strategy: RetryStrategy | None = None,
        publisher: EventPublisher | None = None,
        discount_policy: DiscountPolicy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(retry_strategy, publisher, discount_policy, tracer, enable_tracing)
        self._engine = engine

    async def get(self, sale_id: UUID) -> Sale | None:
        with self._tracer.span(
            "salesledger.sale_repository.get",
            {ATTR_SALE_ID: str(sale_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, number, customer_id, partition_id, status, created_at, version
                        FROM sales
                        WHERE id = :id
                    """),
                    {"id": sale_id},
                )
                row = result.fetchone()
                if row is None:
                    return None
                items = await self._load_items(conn, [sale_id])

            return self._row_to_sale(row, items.get(sale_id, []))

    async def _insert(self, sale: Sale) -> None:
        async with self._engine.begin() as conn:
            allocator = PostgreSQLSequenceAllocator(conn, tracer=self._tracer)
            number = await allocator.next_number(sale.partition_id)
            sale.assign_number(number)
            try:
                await conn.execute(
                    text("""
                        INSERT INTO sales
                            (id, number, customer_id, partition_id, status, created_at, version)
                        VALUES (:id, :number, :customer_id, :partition_id, :status,
                                :created_at, 1)
                    """),
                    {
                        "id": sale.id,
                        "number": sale.number,
                        "customer_id": sale.customer_id,
                        "partition_id": sale.partition_id,
                        "status": sale.status.value,
                        "created_at": sale.created_at,
                    },
                )
            except IntegrityError as e:
                if "uq_sales_partition_number" in str(e).lower():
                    raise ConcurrencyConflictError(SALE_RESOURCE, sale.partition_id) from e
                raise
            await self._insert_items(conn, sale)
            await PostgreSQLOutboxRepository(conn, tracer=self._tracer).add_events(
                sale.uncommitted_events
            )

    async def _update(self, sale: Sale) -> None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text("""
                    UPDATE sales
                    SET status = :status, version = version + 1
                    WHERE id = :id AND version = :expected_version
                """),
                {"status": sale.status.value, "id": sale.id, "expected_version": sale.version},
            )
            if result.rowcount == 0:
                result = await conn.execute(
                    text("SELECT version FROM sales WHERE id = :id"), {"id": sale.id}
                )
                row = result.fetchone()
                if row is None:
                    raise SaleNotFoundError(sale.id)
                raise _conflict(sale, row[0])

            await conn.execute(
                text("DELETE FROM sale_items WHERE sale_id = :sale_id"), {"sale_id": sale.id}
            )
            await self._insert_items(conn, sale)
            await PostgreSQLOutboxRepository(conn, tracer=self._tracer).add_events(
                sale.uncommitted_events
            )

    async def list(self, query: SaleQuery) -> SalePage:
        with self._tracer.span(
            "salesledger.sale_repository.list",
            {"page": query.page, "page_size": query.page_size, ATTR_DB_SYSTEM: "postgresql"},
        ):
            conditions: list[str] = []
            params: dict[str, Any] = {}
            if query.customer_id is not None:
                conditions.append("customer_id = :customer_id")
                params["customer_id"] = query.customer_id
            if query.partition_id is not None:
                conditions.append("partition_id = :partition_id")
                params["partition_id"] = query.partition_id
            if query.status is not None:
                conditions.append("status = :status")
                params["status"] = query.status.value
            if query.date_from is not None:
                conditions.append("created_at >= :date_from")
                params["date_from"] = query.date_from
            if query.date_to is not None:
                conditions.append("created_at <= :date_to")
                params["date_to"] = query.date_to
            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            async with self._engine.connect() as conn:
                result = await conn.execute(text(f"SELECT COUNT(*) FROM sales {where}"), params)
                total_count = result.scalar() or 0

                result = await conn.execute(
                    text(f"""
                        SELECT id, number, customer_id, partition_id, status, created_at, version
                        FROM sales
                        {where}
                        ORDER BY created_at DESC, id
                        LIMIT :limit OFFSET :offset
                    """),
                    {**params, "limit": query.page_size, "offset": query.offset},
                )
                rows = result.fetchall()
                items = await self._load_items(conn, [_uuid(row[0]) for row in rows])

            return SalePage(
                items=[self._row_to_sale(row, items.get(_uuid(row[0]), [])) for row in rows],
                total_count=total_count,
                page=query.page,
                page_size=query.page_size,
            )

    @staticmethod
    async def _insert_items(conn: AsyncConnection, sale: Sale) -> None:
        if not sale.items:
            return
        await conn.execute(
            text("""
                INSERT INTO sale_items
                    (sale_id, product_id, position, quantity, unit_price, discount)
                VALUES (:sale_id, :product_id, :position, :quantity, :unit_price, :discount)
            """),
            [
                {
                    "sale_id": sale.id,
                    "product_id": item.product_id,
                    "position": position,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "discount": item.discount,
                }
                for position, item in enumerate(sale.items)
            ],
        )

    @staticmethod
    async def _load_items(
        conn: AsyncConnection, sale_ids: list[UUID]
    ) -> dict[UUID, list[SaleItem]]:
        if not sale_ids:
            return {}
        result = await conn.execute(
            text("""
                SELECT sale_id, product_id, quantity, unit_price, discount
                FROM sale_items
                WHERE sale_id = ANY(:sale_ids)
                ORDER BY sale_id, position
            """),
            {"sale_ids": sale_ids},
        )
        items: dict[UUID, list[SaleItem]] = {}
        for row in result.fetchall():
            items.setdefault(_uuid(row[0]), []).append(
                SaleItem(
                    product_id=_uuid(row[1]),
                    quantity=row[2],
                    unit_price=Decimal(row[3]),
                    discount=Decimal(row[4]),
                )
            )
        return items

    def _row_to_sale(self, row: Sequence[Any], items: list[SaleItem]) -> Sale:
        return self._build_sale(
            _uuid(row[0]),
            row[1],
            _uuid(row[2]),
            _uuid(row[3]),
            row[4],
            row[5],
            row[6],
            items,
        )


__all__ = [
    "SALE_RESOURCE",
    "MAX_PAGE_SIZE",
    "SaleQuery",
    "SalePage",
    "EventPublisher",
    "SaleRepository",
    "BaseSaleRepository",
    "InMemorySaleRepository",
    "SQLiteSaleRepository",
    "PostgreSQLSaleRepository",
]
