"""
Database schema for the SQL backends.

SQLite stores UUIDs, decimals and timestamps as TEXT (timestamps in ISO 8601
UTC so they sort lexicographically). PostgreSQL uses native UUID, NUMERIC,
TIMESTAMPTZ and JSONB columns.

Both schemas are idempotent (CREATE ... IF NOT EXISTS).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import text

from salesledger.repositories._database import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sales (
    id TEXT PRIMARY KEY,
    number INTEGER NOT NULL,
    customer_id TEXT NOT NULL,
    partition_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    UNIQUE (partition_id, number)
);

CREATE INDEX IF NOT EXISTS idx_sales_customer ON sales (customer_id);
CREATE INDEX IF NOT EXISTS idx_sales_created_at ON sales (created_at);

CREATE TABLE IF NOT EXISTS sale_items (
    sale_id TEXT NOT NULL REFERENCES sales (id) ON DELETE CASCADE,
    product_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    unit_price TEXT NOT NULL,
    discount TEXT NOT NULL,
    PRIMARY KEY (sale_id, product_id)
);

CREATE TABLE IF NOT EXISTS sale_sequences (
    partition_id TEXT PRIMARY KEY,
    last_number INTEGER NOT NULL,
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox_events (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL UNIQUE,
    event_type TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    event_data TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    processed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox_events (status, occurred_at);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    request_id TEXT PRIMARY KEY,
    command_type TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_keys (expires_at);
"""

# Split into individual statements for asyncpg compatibility
POSTGRESQL_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS sales (
        id UUID PRIMARY KEY,
        number INTEGER NOT NULL,
        customer_id UUID NOT NULL,
        partition_id UUID NOT NULL,
        status VARCHAR(32) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        CONSTRAINT uq_sales_partition_number UNIQUE (partition_id, number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sales_customer ON sales (customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_sales_created_at ON sales (created_at)",
    """
    CREATE TABLE IF NOT EXISTS sale_items (
        sale_id UUID NOT NULL REFERENCES sales (id) ON DELETE CASCADE,
        product_id UUID NOT NULL,
        position INTEGER NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        unit_price NUMERIC(12, 2) NOT NULL,
        discount NUMERIC(4, 2) NOT NULL,
        PRIMARY KEY (sale_id, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sale_sequences (
        partition_id UUID PRIMARY KEY,
        last_number INTEGER NOT NULL,
        version INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outbox_events (
        id UUID PRIMARY KEY,
        event_id UUID NOT NULL UNIQUE,
        event_type VARCHAR(255) NOT NULL,
        aggregate_id UUID NOT NULL,
        event_data JSONB NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending',
        retry_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        processed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox_events (status, occurred_at)",
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        request_id VARCHAR(255) PRIMARY KEY,
        command_type VARCHAR(255) NOT NULL,
        aggregate_id UUID NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_keys (expires_at)",
)


async def create_sqlite_schema(connection: aiosqlite.Connection) -> None:
    """
    Create every salesledger table in SQLite.

    Args:
        connection: Open aiosqlite connection
    """
    await connection.executescript(SQLITE_SCHEMA)
    await connection.commit()
    logger.info("Initialized SQLite salesledger schema")


async def create_postgresql_schema(conn: AsyncConnection | AsyncEngine) -> None:
    """
    Create every salesledger table in PostgreSQL.

    Args:
        conn: Database connection or engine
    """
    async with execute_with_connection(conn, transactional=True) as connection:
        for statement in POSTGRESQL_SCHEMA_STATEMENTS:
            await connection.execute(text(statement))
    logger.info("Initialized PostgreSQL salesledger schema")


__all__ = [
    "SQLITE_SCHEMA",
    "POSTGRESQL_SCHEMA_STATEMENTS",
    "create_sqlite_schema",
    "create_postgresql_schema",
]
