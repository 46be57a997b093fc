"""
Idempotency repository for command deduplication.

Every state-changing command carries a client-chosen request id. Once the
command has been applied, the request id is recorded together with the
command type and the id of the sale it touched, so a retried request can
be answered without applying it a second time.

Records expire after a configurable TTL (seven days by default). Expired
records are invisible to lookups and can be removed with purge_expired().
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from salesledger.config import IdempotencyConfig
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_COMMAND_TYPE,
    ATTR_DB_SYSTEM,
    ATTR_REQUEST_ID,
    ATTR_SALE_ID,
)
from salesledger.repositories._database import (
    SQLiteDatabase,
    execute_with_connection,
    parse_sqlite_timestamp,
    to_sqlite_timestamp,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyRecord:
    """
    A processed request.

    Attributes:
        request_id: Client-supplied request identifier
        command_type: Name of the command that was applied
        aggregate_id: Sale the command created or touched
        created_at: When the command was recorded
        expires_at: When the record stops counting as processed
    """

    request_id: str
    command_type: str
    aggregate_id: UUID
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.now(UTC))


@runtime_checkable
class IdempotencyRepository(Protocol):
    """
    Protocol for idempotency repositories.

    Only unexpired records are visible to exists() and get_aggregate_id().
    """

    async def exists(self, request_id: str) -> bool:
        """Check whether a request id was already processed."""
        ...

    async def get(self, request_id: str) -> IdempotencyRecord | None:
        """Get the record for a request id, if processed and not expired."""
        ...

    async def get_aggregate_id(self, request_id: str) -> UUID | None:
        """Get the sale id recorded for a request id."""
        ...

    async def save(self, request_id: str, command_type: str, aggregate_id: UUID) -> bool:
        """
        Record a processed request.

        Returns:
            True if the record was stored, False if an unexpired record for
            the same request id already existed (the duplicate is logged)
        """
        ...

    async def purge_expired(self) -> int:
        """Delete expired records. Returns count deleted."""
        ...


def _log_duplicate(request_id: str, command_type: str, aggregate_id: UUID) -> None:
    logger.warning(
        "Request %s was already recorded; ignoring duplicate %s",
        request_id,
        command_type,
        extra={
            "request_id": request_id,
            "command_type": command_type,
            "aggregate_id": str(aggregate_id),
        },
    )


class PostgreSQLIdempotencyRepository:
    """
    PostgreSQL implementation of idempotency repository.

    Stores records in the `idempotency_keys` table. A conflicting insert
    replaces the existing row only when that row has expired.

    Example:
        >>> repo = PostgreSQLIdempotencyRepository(engine)
        >>> if not await repo.exists(command.request_id):
        ...     sale_id = await create_sale(command)
        ...     await repo.save(command.request_id, "CreateSale", sale_id)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        config: IdempotencyConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._config = config or IdempotencyConfig()

    async def exists(self, request_id: str) -> bool:
        return await self.get(request_id) is not None

    async def get(self, request_id: str) -> IdempotencyRecord | None:
        with self._tracer.span(
            "salesledger.idempotency.get",
            {ATTR_REQUEST_ID: request_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                SELECT request_id, command_type, aggregate_id, created_at, expires_at
                FROM idempotency_keys
                WHERE request_id = :request_id AND expires_at > :now
            """)

            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(
                    query, {"request_id": request_id, "now": datetime.now(UTC)}
                )
                row = result.fetchone()

            if row is None:
                return None
            return IdempotencyRecord(
                request_id=row[0],
                command_type=row[1],
                aggregate_id=row[2],
                created_at=row[3],
                expires_at=row[4],
            )

    async def get_aggregate_id(self, request_id: str) -> UUID | None:
        record = await self.get(request_id)
        return record.aggregate_id if record else None

    async def save(self, request_id: str, command_type: str, aggregate_id: UUID) -> bool:
        with self._tracer.span(
            "salesledger.idempotency.save",
            {
                ATTR_REQUEST_ID: request_id,
                ATTR_COMMAND_TYPE: command_type,
                ATTR_SALE_ID: str(aggregate_id),
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            now = datetime.now(UTC)
            query = text("""
                INSERT INTO idempotency_keys
                    (request_id, command_type, aggregate_id, created_at, expires_at)
                VALUES (:request_id, :command_type, :aggregate_id, :now, :expires_at)
                ON CONFLICT (request_id) DO UPDATE SET
                    command_type = EXCLUDED.command_type,
                    aggregate_id = EXCLUDED.aggregate_id,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                WHERE idempotency_keys.expires_at <= :now
                RETURNING request_id
            """)

            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "request_id": request_id,
                        "command_type": command_type,
                        "aggregate_id": aggregate_id,
                        "now": now,
                        "expires_at": now + self._config.ttl,
                    },
                )
                stored = result.fetchone() is not None

            if not stored:
                _log_duplicate(request_id, command_type, aggregate_id)
            return stored

    async def purge_expired(self) -> int:
        with self._tracer.span(
            "salesledger.idempotency.purge_expired",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                DELETE FROM idempotency_keys
                WHERE expires_at <= :now
                RETURNING request_id
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"now": datetime.now(UTC)})
                deleted = len(result.fetchall())

            if deleted:
                logger.info("Purged %d expired idempotency records", deleted)
            return deleted


class InMemoryIdempotencyRepository:
    """
    In-memory implementation of idempotency repository for testing.

    Args:
        config: TTL settings
        clock: Returns the current time; tests pass a fake to step past
            the TTL
    """

    def __init__(
        self,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._config = config or IdempotencyConfig()
        self._clock = clock or _utcnow
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def exists(self, request_id: str) -> bool:
        return await self.get(request_id) is not None

    async def get(self, request_id: str) -> IdempotencyRecord | None:
        async with self._lock:
            record = self._records.get(request_id)
            if record is None or record.is_expired(self._clock()):
                return None
            return record

    async def get_aggregate_id(self, request_id: str) -> UUID | None:
        record = await self.get(request_id)
        return record.aggregate_id if record else None

    async def save(self, request_id: str, command_type: str, aggregate_id: UUID) -> bool:
        with self._tracer.span(
            "salesledger.idempotency.save",
            {
                ATTR_REQUEST_ID: request_id,
                ATTR_COMMAND_TYPE: command_type,
                ATTR_SALE_ID: str(aggregate_id),
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            now = self._clock()
            async with self._lock:
                existing = self._records.get(request_id)
                if existing is not None and not existing.is_expired(now):
                    stored = False
                else:
                    self._records[request_id] = IdempotencyRecord(
                        request_id=request_id,
                        command_type=command_type,
                        aggregate_id=aggregate_id,
                        created_at=now,
                        expires_at=now + self._config.ttl,
                    )
                    stored = True

            if not stored:
                _log_duplicate(request_id, command_type, aggregate_id)
            return stored

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
        return len(expired)

    async def clear(self) -> None:
        """Clear all records. Useful for test setup/teardown."""
        async with self._lock:
            self._records.clear()


class SQLiteIdempotencyRepository:
    """
    SQLite implementation of idempotency repository.

    Stores records in the `idempotency_keys` table, with timestamps as ISO
    8601 UTC text so expiry checks are plain string comparisons.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        config: IdempotencyConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db = database
        self._config = config or IdempotencyConfig()

    async def exists(self, request_id: str) -> bool:
        return await self.get(request_id) is not None

    async def get(self, request_id: str) -> IdempotencyRecord | None:
        with self._tracer.span(
            "salesledger.idempotency.get",
            {ATTR_REQUEST_ID: request_id, ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """
                    SELECT request_id, command_type, aggregate_id, created_at, expires_at
                    FROM idempotency_keys
                    WHERE request_id = ? AND expires_at > ?
                    """,
                    (request_id, to_sqlite_timestamp(datetime.now(UTC))),
                )
                row = await cursor.fetchone()

            return self._row_to_record(row) if row else None

    async def get_aggregate_id(self, request_id: str) -> UUID | None:
        record = await self.get(request_id)
        return record.aggregate_id if record else None

    async def save(self, request_id: str, command_type: str, aggregate_id: UUID) -> bool:
        with self._tracer.span(
            "salesledger.idempotency.save",
            {
                ATTR_REQUEST_ID: request_id,
                ATTR_COMMAND_TYPE: command_type,
                ATTR_SALE_ID: str(aggregate_id),
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            now = datetime.now(UTC)
            async with self._db.transaction() as conn:
                # An expired record no longer blocks the request id
                await conn.execute(
                    "DELETE FROM idempotency_keys WHERE request_id = ? AND expires_at <= ?",
                    (request_id, to_sqlite_timestamp(now)),
                )
                cursor = await conn.execute(
                    """
                    INSERT OR IGNORE INTO idempotency_keys
                        (request_id, command_type, aggregate_id, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        request_id,
                        command_type,
                        str(aggregate_id),
                        to_sqlite_timestamp(now),
                        to_sqlite_timestamp(now + self._config.ttl),
                    ),
                )
                stored = cursor.rowcount == 1

            if not stored:
                _log_duplicate(request_id, command_type, aggregate_id)
            return stored

    async def purge_expired(self) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= ?",
                (to_sqlite_timestamp(datetime.now(UTC)),),
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info("Purged %d expired idempotency records", deleted)
        return deleted

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> IdempotencyRecord:
        created_at = parse_sqlite_timestamp(row[3])  # type: ignore[arg-type]
        expires_at = parse_sqlite_timestamp(row[4])  # type: ignore[arg-type]
        assert created_at is not None and expires_at is not None
        return IdempotencyRecord(
            request_id=str(row[0]),
            command_type=str(row[1]),
            aggregate_id=UUID(str(row[2])),
            created_at=created_at,
            expires_at=expires_at,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "IdempotencyRecord",
    "IdempotencyRepository",
    "PostgreSQLIdempotencyRepository",
    "InMemoryIdempotencyRepository",
    "SQLiteIdempotencyRepository",
]
