"""
Per-partition sale number allocation with optimistic concurrency.

Each partition (branch) owns a counter row holding the last issued number
and a version. Allocation is an explicit compare-and-swap:

1. Read (last_number, version) for the partition
2. Write last_number + 1 with version + 1, but only where the stored
   version still equals the one that was read

If no row matched, another writer got there first and a
ConcurrencyConflictError is raised. The first allocation in a partition
inserts the counter row; losing that race surfaces as a unique-constraint
violation, reported as the same conflict.

Allocators do not retry by themselves. Callers run allocation (together
with the rest of their unit of work) inside a RetryStrategy.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

import aiosqlite
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from salesledger.exceptions import ConcurrencyConflictError
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_PARTITION_ID,
    ATTR_SALE_NUMBER,
    ATTR_VERSION,
)
from salesledger.repositories._database import SQLiteDatabase, execute_with_connection

logger = logging.getLogger(__name__)

SEQUENCE_RESOURCE = "sale_sequence"


@dataclass(frozen=True)
class SequenceCounter:
    """
    The stored state of one partition's counter.

    Attributes:
        partition_id: Partition the counter belongs to
        last_number: Highest number issued so far
        version: Incremented on every successful allocation
    """

    partition_id: UUID
    last_number: int
    version: int

    def advance(self) -> "SequenceCounter":
        return SequenceCounter(self.partition_id, self.last_number + 1, self.version + 1)


@runtime_checkable
class SequenceAllocator(Protocol):
    """
    Protocol for partition-scoped sequence allocators.

    Numbers are strictly increasing per partition and never issued twice.
    Gaps are possible only when the transaction that allocated a number
    rolls back.
    """

    async def next_number(self, partition_id: UUID) -> int:
        """
        Allocate the next number for a partition.

        Raises:
            ConcurrencyConflictError: If a concurrent allocation won the race
        """
        ...

    async def current(self, partition_id: UUID) -> SequenceCounter | None:
        """Get the counter for a partition, or None before first allocation."""
        ...


def _log_allocated(partition_id: UUID, counter: SequenceCounter) -> None:
    logger.debug(
        "Allocated sale number %d for partition %s",
        counter.last_number,
        partition_id,
        extra={
            "partition_id": str(partition_id),
            "sale_number": counter.last_number,
            "version": counter.version,
        },
    )


class InMemorySequenceAllocator:
    """
    In-memory implementation of sequence allocator for testing.

    The read and the compare-and-swap are separate awaits, so concurrent
    callers can interleave between them exactly like database clients do.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._counters: dict[UUID, SequenceCounter] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def next_number(self, partition_id: UUID) -> int:
        with self._tracer.span(
            "salesledger.sequence.next_number",
            {ATTR_PARTITION_ID: str(partition_id), ATTR_DB_SYSTEM: "memory"},
        ) as span:
            current = await self._read(partition_id)
            expected = current or SequenceCounter(partition_id, 0, 0)
            updated = expected.advance()
            await self._compare_and_swap(expected, updated)
            _log_allocated(partition_id, updated)
            if span:
                span.set_attribute(ATTR_SALE_NUMBER, updated.last_number)
                span.set_attribute(ATTR_VERSION, updated.version)
            return updated.last_number

    async def current(self, partition_id: UUID) -> SequenceCounter | None:
        return await self._read(partition_id)

    async def _read(self, partition_id: UUID) -> SequenceCounter | None:
        async with self._lock:
            return self._counters.get(partition_id)

    async def _compare_and_swap(self, expected: SequenceCounter, updated: SequenceCounter) -> None:
        async with self._lock:
            stored = self._counters.get(expected.partition_id)
            actual_version = stored.version if stored else 0
            if actual_version != expected.version:
                raise ConcurrencyConflictError(
                    SEQUENCE_RESOURCE,
                    expected.partition_id,
                    expected_version=expected.version,
                    actual_version=actual_version,
                )
            self._counters[expected.partition_id] = updated

    async def clear(self) -> None:
        """Reset every counter. Useful for test setup/teardown."""
        async with self._lock:
            self._counters.clear()


class PostgreSQLSequenceAllocator:
    """
    PostgreSQL implementation of sequence allocator.

    Uses the `sale_sequences` table. Pass the AsyncConnection of the
    transaction that also inserts the sale, so that a rollback releases the
    number together with the sale row.

    Example:
        >>> async with engine.begin() as conn:
        ...     number = await PostgreSQLSequenceAllocator(conn).next_number(branch_id)
        ...     # insert sale with number on conn ...
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def next_number(self, partition_id: UUID) -> int:
        with self._tracer.span(
            "salesledger.sequence.next_number",
            {ATTR_PARTITION_ID: str(partition_id), ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        SELECT last_number, version
                        FROM sale_sequences
                        WHERE partition_id = :partition_id
                    """),
                    {"partition_id": partition_id},
                )
                row = result.fetchone()

                if row is None:
                    updated = SequenceCounter(partition_id, 1, 1)
                    try:
                        # Savepoint keeps an outer transaction usable after a lost race
                        async with conn.begin_nested():
                            await conn.execute(
                                text("""
                                    INSERT INTO sale_sequences (partition_id, last_number, version)
                                    VALUES (:partition_id, 1, 1)
                                """),
                                {"partition_id": partition_id},
                            )
                    except IntegrityError as e:
                        raise ConcurrencyConflictError(
                            SEQUENCE_RESOURCE, partition_id, expected_version=0
                        ) from e
                else:
                    expected = SequenceCounter(partition_id, row[0], row[1])
                    updated = expected.advance()
                    result = await conn.execute(
                        text("""
                            UPDATE sale_sequences
                            SET last_number = :last_number, version = :new_version
                            WHERE partition_id = :partition_id AND version = :expected_version
                        """),
                        {
                            "partition_id": partition_id,
                            "last_number": updated.last_number,
                            "new_version": updated.version,
                            "expected_version": expected.version,
                        },
                    )
                    if result.rowcount == 0:
                        raise ConcurrencyConflictError(
                            SEQUENCE_RESOURCE, partition_id, expected_version=expected.version
                        )

            _log_allocated(partition_id, updated)
            if span:
                span.set_attribute(ATTR_SALE_NUMBER, updated.last_number)
                span.set_attribute(ATTR_VERSION, updated.version)
            return updated.last_number

    async def current(self, partition_id: UUID) -> SequenceCounter | None:
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(
                text("""
                    SELECT last_number, version
                    FROM sale_sequences
                    WHERE partition_id = :partition_id
                """),
                {"partition_id": partition_id},
            )
            row = result.fetchone()
        return SequenceCounter(partition_id, row[0], row[1]) if row else None


class SQLiteSequenceAllocator:
    """
    SQLite implementation of sequence allocator.

    Uses the `sale_sequences` table. next_number() accepts the connection
    of an open SQLiteDatabase transaction so the allocation commits or
    rolls back with the sale insert.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db = database

    async def next_number(
        self,
        partition_id: UUID,
        connection: aiosqlite.Connection | None = None,
    ) -> int:
        """
        Allocate the next number for a partition.

        Args:
            partition_id: Partition to allocate in
            connection: Connection of an open transaction. When omitted the
                allocation runs in its own transaction.
        """
        with self._tracer.span(
            "salesledger.sequence.next_number",
            {ATTR_PARTITION_ID: str(partition_id), ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            if connection is not None:
                updated = await self._allocate(connection, partition_id)
            else:
                async with self._db.transaction() as conn:
                    updated = await self._allocate(conn, partition_id)

            _log_allocated(partition_id, updated)
            if span:
                span.set_attribute(ATTR_SALE_NUMBER, updated.last_number)
                span.set_attribute(ATTR_VERSION, updated.version)
            return updated.last_number

    @staticmethod
    async def _allocate(connection: aiosqlite.Connection, partition_id: UUID) -> SequenceCounter:
        key = str(partition_id)
        cursor = await connection.execute(
            "SELECT last_number, version FROM sale_sequences WHERE partition_id = ?",
            (key,),
        )
        row: Sequence[int] | None = await cursor.fetchone()  # type: ignore[assignment]

        if row is None:
            try:
                await connection.execute(
                    "INSERT INTO sale_sequences (partition_id, last_number, version) "
                    "VALUES (?, 1, 1)",
                    (key,),
                )
            except aiosqlite.IntegrityError as e:
                raise ConcurrencyConflictError(
                    SEQUENCE_RESOURCE, partition_id, expected_version=0
                ) from e
            return SequenceCounter(partition_id, 1, 1)

        expected = SequenceCounter(partition_id, row[0], row[1])
        updated = expected.advance()
        cursor = await connection.execute(
            """
            UPDATE sale_sequences
            SET last_number = ?, version = ?
            WHERE partition_id = ? AND version = ?
            """,
            (updated.last_number, updated.version, key, expected.version),
        )
        if cursor.rowcount == 0:
            raise ConcurrencyConflictError(
                SEQUENCE_RESOURCE, partition_id, expected_version=expected.version
            )
        return updated

    async def current(self, partition_id: UUID) -> SequenceCounter | None:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT last_number, version FROM sale_sequences WHERE partition_id = ?",
                (str(partition_id),),
            )
            row = await cursor.fetchone()
        return SequenceCounter(partition_id, row[0], row[1]) if row else None


__all__ = [
    "SEQUENCE_RESOURCE",
    "SequenceCounter",
    "SequenceAllocator",
    "InMemorySequenceAllocator",
    "PostgreSQLSequenceAllocator",
    "SQLiteSequenceAllocator",
]
