"""
Outbox repository for transactional event publishing.

Domain events are written to the outbox in the same transaction as the sale
that produced them, then delivered asynchronously by the OutboxDispatcher.
This gives:
- No event recorded for a write that did not commit
- No committed write without its events
- At-least-once delivery, with a bounded number of re-attempts per record

Record lifecycle::

    pending --(all subscribers ran)--------------------------> processed
    pending --(dispatch error, retry_count < cap)------------> pending
    pending --(dispatch error, retry_count reaches cap)------> failed
    pending --(unknown type or undecodable payload)----------> failed
"""

import asyncio
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol, runtime_checkable
from uuid import UUID, uuid4

import aiosqlite
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from salesledger.events.base import DomainEvent
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_SYSTEM,
    ATTR_EVENT_COUNT,
    ATTR_OUTBOX_ID,
)
from salesledger.repositories._database import (
    SQLiteDatabase,
    execute_with_connection,
    parse_sqlite_timestamp,
    to_sqlite_timestamp,
)

DEFAULT_MAX_RETRIES = 5


class OutboxStatus(str, Enum):
    """Delivery status of an outbox record."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class OutboxRecord:
    """
    A captured domain event awaiting delivery.

    Attributes:
        id: Unique outbox record identifier
        event_id: ID of the captured event
        event_type: Type tag used to decode event_data
        aggregate_id: Sale the event belongs to
        event_data: JSON serialization of the event
        occurred_at: When the event occurred (delivery order key)
        status: Current OutboxStatus
        retry_count: Number of failed delivery attempts
        last_error: Error text of the last failed attempt
        processed_at: When delivery completed
        created_at: When the record was written
    """

    id: UUID
    event_id: UUID
    event_type: str
    aggregate_id: UUID
    event_data: str
    occurred_at: datetime
    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_event(cls, event: DomainEvent) -> "OutboxRecord":
        """Build a pending record for an event."""
        return cls(
            id=uuid4(),
            event_id=event.event_id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
            event_data=event.to_json(),
            occurred_at=event.occurred_at,
        )


@dataclass(frozen=True)
class OutboxStats:
    """
    Aggregate statistics for the outbox.

    Attributes:
        pending_count: Number of records awaiting delivery
        processed_count: Number of delivered records
        failed_count: Number of records that gave up
        oldest_pending: occurred_at of the oldest pending record
        avg_retries: Average retry count of pending records
    """

    pending_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    oldest_pending: datetime | None = None
    avg_retries: float = 0.0


@runtime_checkable
class OutboxRepository(Protocol):
    """
    Protocol for outbox repositories.

    add_events() is the write side used by sale repositories inside their
    transaction; every other method is used by the dispatcher and operators.
    """

    async def add_events(self, events: Sequence[DomainEvent]) -> list[UUID]:
        """
        Append one pending record per event.

        Returns:
            IDs of the created outbox records, in event order
        """
        ...

    async def get_pending(
        self, limit: int = 50, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> list[OutboxRecord]:
        """
        Get pending records below the retry cap, oldest occurred_at first.
        """
        ...

    async def get(self, outbox_id: UUID) -> OutboxRecord | None:
        """Get a single record by id."""
        ...

    async def mark_processed(self, outbox_id: UUID) -> None:
        """Mark a record as delivered, stamping processed_at."""
        ...

    async def mark_failed(self, outbox_id: UUID, error: str) -> None:
        """Mark a record as permanently failed. It will not be polled again."""
        ...

    async def record_failure(
        self, outbox_id: UUID, error: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> OutboxStatus:
        """
        Count a failed delivery attempt.

        Increments retry_count and stores the error. The record stays
        pending while retry_count is below max_retries and becomes failed
        once it reaches it.

        Returns:
            The record's status after the update
        """
        ...

    async def list_failed(self, limit: int = 100) -> list[OutboxRecord]:
        """List permanently failed records, most recent first."""
        ...

    async def cleanup_processed(self, days: int = 7) -> int:
        """Delete processed records older than days. Returns count deleted."""
        ...

    async def get_stats(self) -> OutboxStats:
        """Get outbox statistics."""
        ...


def _status_after_failure(retry_count: int, max_retries: int) -> OutboxStatus:
    return OutboxStatus.FAILED if retry_count >= max_retries else OutboxStatus.PENDING


class PostgreSQLOutboxRepository:
    """
    PostgreSQL implementation of outbox repository.

    Stores records in the `outbox_events` table. Pass an AsyncConnection to
    take part in an outer transaction, or an AsyncEngine for standalone use.

    Example:
        >>> async with engine.begin() as conn:
        ...     # sale row written on conn ...
        ...     await PostgreSQLOutboxRepository(conn).add_events(events)
        >>>
        >>> # Later, in the dispatcher:
        >>> repo = PostgreSQLOutboxRepository(engine)
        >>> for record in await repo.get_pending(limit=50):
        ...     await repo.mark_processed(record.id)
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

    async def add_events(self, events: Sequence[DomainEvent]) -> list[UUID]:
        with self._tracer.span(
            "salesledger.outbox.add_events",
            {ATTR_EVENT_COUNT: len(events), ATTR_DB_SYSTEM: "postgresql"},
        ):
            records = [OutboxRecord.from_event(event) for event in events]
            if not records:
                return []

            query = text("""
                INSERT INTO outbox_events
                    (id, event_id, event_type, aggregate_id, event_data,
                     occurred_at, status, retry_count, created_at)
                VALUES (:id, :event_id, :event_type, :aggregate_id, :event_data,
                        :occurred_at, 'pending', 0, :created_at)
            """)
            params = [
                {
                    "id": record.id,
                    "event_id": record.event_id,
                    "event_type": record.event_type,
                    "aggregate_id": record.aggregate_id,
                    "event_data": record.event_data,
                    "occurred_at": record.occurred_at,
                    "created_at": record.created_at,
                }
                for record in records
            ]

            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

            return [record.id for record in records]

    async def get_pending(
        self, limit: int = 50, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> list[OutboxRecord]:
        with self._tracer.span(
            "salesledger.outbox.get_pending",
            {ATTR_BATCH_SIZE: limit, ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            query = text("""
                SELECT id, event_id, event_type, aggregate_id, event_data, occurred_at,
                       status, retry_count, last_error, processed_at, created_at
                FROM outbox_events
                WHERE status = 'pending' AND retry_count < :max_retries
                ORDER BY occurred_at ASC, created_at ASC
                LIMIT :limit
            """)

            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"limit": limit, "max_retries": max_retries})
                rows = result.fetchall()

            records = [self._row_to_record(row) for row in rows]
            if span:
                span.set_attribute(ATTR_EVENT_COUNT, len(records))
            return records

    async def get(self, outbox_id: UUID) -> OutboxRecord | None:
        query = text("""
            SELECT id, event_id, event_type, aggregate_id, event_data, occurred_at,
                   status, retry_count, last_error, processed_at, created_at
            FROM outbox_events
            WHERE id = :id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"id": outbox_id})
            row = result.fetchone()
        return self._row_to_record(row) if row else None

    async def mark_processed(self, outbox_id: UUID) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_processed",
            {ATTR_OUTBOX_ID: str(outbox_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                UPDATE outbox_events
                SET status = 'processed',
                    processed_at = :processed_at
                WHERE id = :id
            """)

            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, {"id": outbox_id, "processed_at": datetime.now(UTC)})

    async def mark_failed(self, outbox_id: UUID, error: str) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_failed",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                UPDATE outbox_events
                SET status = 'failed',
                    last_error = :error
                WHERE id = :id
            """)

            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, {"id": outbox_id, "error": error})

    async def record_failure(
        self, outbox_id: UUID, error: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> OutboxStatus:
        with self._tracer.span(
            "salesledger.outbox.record_failure",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                UPDATE outbox_events
                SET retry_count = retry_count + 1,
                    last_error = :error,
                    status = CASE WHEN retry_count + 1 >= :max_retries
                                  THEN 'failed' ELSE 'pending' END
                WHERE id = :id
                RETURNING status
            """)

            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    query, {"id": outbox_id, "error": error, "max_retries": max_retries}
                )
                row = result.fetchone()

            return OutboxStatus(row[0]) if row else OutboxStatus.FAILED

    async def list_failed(self, limit: int = 100) -> list[OutboxRecord]:
        query = text("""
            SELECT id, event_id, event_type, aggregate_id, event_data, occurred_at,
                   status, retry_count, last_error, processed_at, created_at
            FROM outbox_events
            WHERE status = 'failed'
            ORDER BY occurred_at DESC
            LIMIT :limit
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"limit": limit})
            rows = result.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def cleanup_processed(self, days: int = 7) -> int:
        with self._tracer.span(
            "salesledger.outbox.cleanup",
            {"older_than_days": days, ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            query = text("""
                DELETE FROM outbox_events
                WHERE status = 'processed'
                  AND processed_at < NOW() - INTERVAL '1 day' * :days
                RETURNING id
            """)

            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"days": days})
                deleted = len(result.fetchall())

            if span:
                span.set_attribute("deleted_count", deleted)
            return deleted

    async def get_stats(self) -> OutboxStats:
        with self._tracer.span(
            "salesledger.outbox.get_stats",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                SELECT
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending_count,
                    COUNT(*) FILTER (WHERE status = 'processed') AS processed_count,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed_count,
                    MIN(occurred_at) FILTER (WHERE status = 'pending') AS oldest_pending,
                    AVG(retry_count) FILTER (WHERE status = 'pending') AS avg_retries
                FROM outbox_events
            """)

            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                row = result.fetchone()

            if row is None:
                return OutboxStats()

            return OutboxStats(
                pending_count=row[0] or 0,
                processed_count=row[1] or 0,
                failed_count=row[2] or 0,
                oldest_pending=row[3],
                avg_retries=float(row[4]) if row[4] else 0.0,
            )

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> OutboxRecord:
        event_data = row[4]
        if not isinstance(event_data, str):
            # JSONB comes back decoded
            event_data = json.dumps(event_data)
        return OutboxRecord(
            id=row[0],  # type: ignore[arg-type]
            event_id=row[1],  # type: ignore[arg-type]
            event_type=row[2],  # type: ignore[arg-type]
            aggregate_id=row[3],  # type: ignore[arg-type]
            event_data=event_data,
            occurred_at=row[5],  # type: ignore[arg-type]
            status=OutboxStatus(row[6]),
            retry_count=row[7] or 0,  # type: ignore[arg-type]
            last_error=row[8],  # type: ignore[arg-type]
            processed_at=row[9],  # type: ignore[arg-type]
            created_at=row[10],  # type: ignore[arg-type]
        )


class InMemoryOutboxRepository:
    """
    In-memory implementation of outbox repository for testing.

    Records are kept in insertion order. All data is lost when the process
    terminates.

    Example:
        >>> repo = InMemoryOutboxRepository()
        >>> await repo.add_events(sale.uncommitted_events)
        >>> pending = await repo.get_pending()
        >>> await repo.mark_processed(pending[0].id)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._records: dict[UUID, OutboxRecord] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def add_events(self, events: Sequence[DomainEvent]) -> list[UUID]:
        with self._tracer.span(
            "salesledger.outbox.add_events",
            {ATTR_EVENT_COUNT: len(events), ATTR_DB_SYSTEM: "memory"},
        ):
            records = [OutboxRecord.from_event(event) for event in events]
            async with self._lock:
                for record in records:
                    self._records[record.id] = record
            return [record.id for record in records]

    async def get_pending(
        self, limit: int = 50, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> list[OutboxRecord]:
        with self._tracer.span(
            "salesledger.outbox.get_pending",
            {ATTR_BATCH_SIZE: limit, ATTR_DB_SYSTEM: "memory"},
        ) as span:
            async with self._lock:
                pending = [
                    r
                    for r in self._records.values()
                    if r.status is OutboxStatus.PENDING and r.retry_count < max_retries
                ]
                # sort() is stable, so ties keep insertion order
                pending.sort(key=lambda r: r.occurred_at)
                result = pending[:limit]
            if span:
                span.set_attribute(ATTR_EVENT_COUNT, len(result))
            return result

    async def get(self, outbox_id: UUID) -> OutboxRecord | None:
        async with self._lock:
            return self._records.get(outbox_id)

    async def mark_processed(self, outbox_id: UUID) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_processed",
            {ATTR_OUTBOX_ID: str(outbox_id), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                record = self._records.get(outbox_id)
                if record is not None:
                    record.status = OutboxStatus.PROCESSED
                    record.processed_at = datetime.now(UTC)

    async def mark_failed(self, outbox_id: UUID, error: str) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_failed",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                record = self._records.get(outbox_id)
                if record is not None:
                    record.status = OutboxStatus.FAILED
                    record.last_error = error

    async def record_failure(
        self, outbox_id: UUID, error: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> OutboxStatus:
        with self._tracer.span(
            "salesledger.outbox.record_failure",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                record = self._records.get(outbox_id)
                if record is None:
                    return OutboxStatus.FAILED
                record.retry_count += 1
                record.last_error = error
                record.status = _status_after_failure(record.retry_count, max_retries)
                return record.status

    async def list_failed(self, limit: int = 100) -> list[OutboxRecord]:
        async with self._lock:
            failed = [r for r in self._records.values() if r.status is OutboxStatus.FAILED]
        failed.sort(key=lambda r: r.occurred_at, reverse=True)
        return failed[:limit]

    async def cleanup_processed(self, days: int = 7) -> int:
        with self._tracer.span(
            "salesledger.outbox.cleanup",
            {"older_than_days": days, ATTR_DB_SYSTEM: "memory"},
        ) as span:
            cutoff = datetime.now(UTC) - timedelta(days=days)
            async with self._lock:
                ids_to_delete = [
                    id_
                    for id_, record in self._records.items()
                    if record.status is OutboxStatus.PROCESSED
                    and record.processed_at is not None
                    and record.processed_at < cutoff
                ]
                for id_ in ids_to_delete:
                    del self._records[id_]

            if span:
                span.set_attribute("deleted_count", len(ids_to_delete))
            return len(ids_to_delete)

    async def get_stats(self) -> OutboxStats:
        with self._tracer.span(
            "salesledger.outbox.get_stats",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                records = list(self._records.values())

            pending = [r for r in records if r.status is OutboxStatus.PENDING]
            return OutboxStats(
                pending_count=len(pending),
                processed_count=sum(1 for r in records if r.status is OutboxStatus.PROCESSED),
                failed_count=sum(1 for r in records if r.status is OutboxStatus.FAILED),
                oldest_pending=min((r.occurred_at for r in pending), default=None),
                avg_retries=(sum(r.retry_count for r in pending) / len(pending))
                if pending
                else 0.0,
            )

    async def all_records(self) -> list[OutboxRecord]:
        """Every record in insertion order. Useful for assertions in tests."""
        async with self._lock:
            return list(self._records.values())

    async def clear(self) -> None:
        """Clear all records. Useful for test setup/teardown."""
        async with self._lock:
            self._records.clear()


class SQLiteOutboxRepository:
    """
    SQLite implementation of outbox repository.

    Stores records in the `outbox_events` table.

    SQLite-specific adaptations:
    - UUIDs stored as TEXT (36 characters, hyphenated format)
    - Timestamps stored as TEXT in ISO 8601 UTC format
    - Uses `?` positional parameters instead of named parameters
    - Uses `SUM(CASE WHEN ... THEN 1 ELSE 0 END)` instead of `COUNT(*) FILTER`

    add_events() accepts the connection of an open SQLiteDatabase
    transaction so it can commit together with the sale rows.

    Example:
        >>> async with db.transaction() as conn:
        ...     # sale row written on conn ...
        ...     await outbox.add_events(events, connection=conn)
    """

    _COLUMNS = """
        id, event_id, event_type, aggregate_id, event_data, occurred_at,
        status, retry_count, last_error, processed_at, created_at
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

    async def add_events(
        self,
        events: Sequence[DomainEvent],
        connection: aiosqlite.Connection | None = None,
    ) -> list[UUID]:
        """
        Append one pending record per event.

        Args:
            events: Events to capture
            connection: Connection of an open transaction. When omitted the
                insert runs in its own transaction.
        """
        with self._tracer.span(
            "salesledger.outbox.add_events",
            {ATTR_EVENT_COUNT: len(events), ATTR_DB_SYSTEM: "sqlite"},
        ):
            records = [OutboxRecord.from_event(event) for event in events]
            if connection is not None:
                await self._insert(connection, records)
            else:
                async with self._db.transaction() as conn:
                    await self._insert(conn, records)
            return [record.id for record in records]

    @staticmethod
    async def _insert(connection: aiosqlite.Connection, records: list[OutboxRecord]) -> None:
        if not records:
            return
        await connection.executemany(
            """
            INSERT INTO outbox_events
                (id, event_id, event_type, aggregate_id, event_data,
                 occurred_at, status, retry_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?)
            """,
            [
                (
                    str(record.id),
                    str(record.event_id),
                    record.event_type,
                    str(record.aggregate_id),
                    record.event_data,
                    to_sqlite_timestamp(record.occurred_at),
                    to_sqlite_timestamp(record.created_at),
                )
                for record in records
            ],
        )

    async def get_pending(
        self, limit: int = 50, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> list[OutboxRecord]:
        with self._tracer.span(
            "salesledger.outbox.get_pending",
            {ATTR_BATCH_SIZE: limit, ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    f"""
                    SELECT {self._COLUMNS}
                    FROM outbox_events
                    WHERE status = 'pending' AND retry_count < ?
                    ORDER BY occurred_at ASC, created_at ASC, rowid ASC
                    LIMIT ?
                    """,
                    (max_retries, limit),
                )
                rows = await cursor.fetchall()

            records = [self._row_to_record(row) for row in rows]
            if span:
                span.set_attribute(ATTR_EVENT_COUNT, len(records))
            return records

    async def get(self, outbox_id: UUID) -> OutboxRecord | None:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"SELECT {self._COLUMNS} FROM outbox_events WHERE id = ?",
                (str(outbox_id),),
            )
            row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def mark_processed(self, outbox_id: UUID) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_processed",
            {ATTR_OUTBOX_ID: str(outbox_id), ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._db.transaction() as conn:
                await conn.execute(
                    """
                    UPDATE outbox_events
                    SET status = 'processed', processed_at = ?
                    WHERE id = ?
                    """,
                    (to_sqlite_timestamp(datetime.now(UTC)), str(outbox_id)),
                )

    async def mark_failed(self, outbox_id: UUID, error: str) -> None:
        with self._tracer.span(
            "salesledger.outbox.mark_failed",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            async with self._db.transaction() as conn:
                await conn.execute(
                    """
                    UPDATE outbox_events
                    SET status = 'failed', last_error = ?
                    WHERE id = ?
                    """,
                    (error, str(outbox_id)),
                )

    async def record_failure(
        self, outbox_id: UUID, error: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> OutboxStatus:
        with self._tracer.span(
            "salesledger.outbox.record_failure",
            {
                ATTR_OUTBOX_ID: str(outbox_id),
                "error": error[:100] if error else None,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            async with self._db.transaction() as conn:
                await conn.execute(
                    """
                    UPDATE outbox_events
                    SET retry_count = retry_count + 1,
                        last_error = ?,
                        status = CASE WHEN retry_count + 1 >= ? THEN 'failed'
                                      ELSE 'pending' END
                    WHERE id = ?
                    """,
                    (error, max_retries, str(outbox_id)),
                )
                cursor = await conn.execute(
                    "SELECT status FROM outbox_events WHERE id = ?",
                    (str(outbox_id),),
                )
                row = await cursor.fetchone()

            return OutboxStatus(row[0]) if row else OutboxStatus.FAILED

    async def list_failed(self, limit: int = 100) -> list[OutboxRecord]:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {self._COLUMNS}
                FROM outbox_events
                WHERE status = 'failed'
                ORDER BY occurred_at DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def cleanup_processed(self, days: int = 7) -> int:
        with self._tracer.span(
            "salesledger.outbox.cleanup",
            {"older_than_days": days, ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            cutoff = to_sqlite_timestamp(datetime.now(UTC) - timedelta(days=days))
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """
                    DELETE FROM outbox_events
                    WHERE status = 'processed' AND processed_at < ?
                    """,
                    (cutoff,),
                )
                deleted = cursor.rowcount

            if span:
                span.set_attribute("deleted_count", deleted)
            return deleted

    async def get_stats(self) -> OutboxStats:
        with self._tracer.span(
            "salesledger.outbox.get_stats",
            {ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """
                    SELECT
                        SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN status = 'processed' THEN 1 ELSE 0 END),
                        SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END),
                        MIN(CASE WHEN status = 'pending' THEN occurred_at END),
                        AVG(CASE WHEN status = 'pending' THEN retry_count END)
                    FROM outbox_events
                    """
                )
                row = await cursor.fetchone()

            if row is None:
                return OutboxStats()

            return OutboxStats(
                pending_count=row[0] or 0,
                processed_count=row[1] or 0,
                failed_count=row[2] or 0,
                oldest_pending=parse_sqlite_timestamp(row[3]),
                avg_retries=float(row[4]) if row[4] else 0.0,
            )

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> OutboxRecord:
        occurred_at = parse_sqlite_timestamp(row[5])  # type: ignore[arg-type]
        created_at = parse_sqlite_timestamp(row[10])  # type: ignore[arg-type]
        assert occurred_at is not None and created_at is not None
        return OutboxRecord(
            id=UUID(str(row[0])),
            event_id=UUID(str(row[1])),
            event_type=str(row[2]),
            aggregate_id=UUID(str(row[3])),
            event_data=str(row[4]),
            occurred_at=occurred_at,
            status=OutboxStatus(row[6]),
            retry_count=int(row[7] or 0),  # type: ignore[call-overload]
            last_error=row[8],  # type: ignore[arg-type]
            processed_at=parse_sqlite_timestamp(row[9]),  # type: ignore[arg-type]
            created_at=created_at,
        )


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "OutboxStatus",
    "OutboxRecord",
    "OutboxStats",
    "OutboxRepository",
    "PostgreSQLOutboxRepository",
    "InMemoryOutboxRepository",
    "SQLiteOutboxRepository",
]
