"""
Connection and transaction helpers shared by the SQL repositories.

PostgreSQL repositories accept either an AsyncEngine or an AsyncConnection;
execute_with_connection() gives them one code path for both. Passing a
connection lets several repositories write inside one outer transaction.

SQLite repositories share a single aiosqlite connection through
SQLiteDatabase, whose transaction() serializes writers with an asyncio.Lock
so one coroutine's commit can never flush another coroutine's half-written
unit of work.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import TracebackType

import aiosqlite
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for execute() calls.

    Args:
        conn: Database connection or engine
        transactional: If True, an engine is entered with begin() so the
            block commits on success and rolls back on error. If False, a
            bare connect() is used. Ignored for connections.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)

    Note:
        When an AsyncConnection is passed, the caller owns the transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


class SQLiteDatabase:
    """
    A shared aiosqlite connection with serialized transactions.

    Example:
        >>> async with SQLiteDatabase("sales.db") as db:
        ...     await create_sqlite_schema(db.connection)
        ...     async with db.transaction() as conn:
        ...         await conn.execute("UPDATE ...", params)
    """

    def __init__(
        self,
        database: str = ":memory:",
        busy_timeout: int = 5000,
        wal_mode: bool = False,
    ) -> None:
        """
        Args:
            database: Path to the database file, or ":memory:"
            busy_timeout: Milliseconds SQLite waits on a locked database
            wal_mode: Enable write-ahead logging (file databases only)
        """
        self._database = database
        self._busy_timeout = busy_timeout
        self._wal_mode = wal_mode
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_connection(cls, connection: aiosqlite.Connection) -> SQLiteDatabase:
        """Wrap a connection that was opened elsewhere (e.g. a test fixture)."""
        db = cls()
        db._connection = connection
        return db

    async def __aenter__(self) -> SQLiteDatabase:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection and configure pragmas. No-op if already open."""
        if self._connection is not None:
            return

        self._connection = await aiosqlite.connect(self._database)
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute(f"PRAGMA busy_timeout = {self._busy_timeout}")
        if self._wal_mode:
            await self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.row_factory = aiosqlite.Row

        logger.debug(
            "Connected to SQLite database: %s (wal_mode=%s, busy_timeout=%d)",
            self._database,
            self._wal_mode,
            self._busy_timeout,
        )

    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug("Closed SQLite database: %s", self._database)

    @property
    def connection(self) -> aiosqlite.Connection:
        """
        The underlying connection.

        Raises:
            RuntimeError: If the database is not connected
        """
        if self._connection is None:
            raise RuntimeError("SQLite database is not connected. Call connect() first.")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block as one transaction: commit on success, rollback on error.

        Transactions are serialized; the lock is not reentrant, so code
        running inside a transaction must use the yielded connection
        directly instead of opening another transaction.
        """
        connection = self.connection
        async with self._lock:
            try:
                yield connection
            except BaseException:
                await connection.rollback()
                raise
            else:
                await connection.commit()


def to_sqlite_timestamp(value: datetime | None) -> str | None:
    """Render a datetime as a sortable ISO 8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_sqlite_timestamp(value: str | None) -> datetime | None:
    """Parse a timestamp written by to_sqlite_timestamp()."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = [
    "execute_with_connection",
    "SQLiteDatabase",
    "to_sqlite_timestamp",
    "parse_sqlite_timestamp",
]
