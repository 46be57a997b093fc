"""
Standard span attributes for salesledger.

Attribute constants shared by repositories, the outbox dispatcher and the
command handlers so spans can be filtered consistently. Database attributes
follow OpenTelemetry semantic conventions.
"""

# =============================================================================
# Sale Attributes
# =============================================================================

ATTR_SALE_ID = "salesledger.sale.id"
"""Unique identifier of the sale aggregate (UUID string)."""

ATTR_SALE_NUMBER = "salesledger.sale.number"
"""Partition-scoped sequential sale number (integer)."""

ATTR_PARTITION_ID = "salesledger.partition.id"
"""Branch/partition the sale number is allocated in (UUID string)."""

ATTR_VERSION = "salesledger.version"
"""Optimistic concurrency version of a row (integer)."""

# =============================================================================
# Event and Outbox Attributes
# =============================================================================

ATTR_EVENT_ID = "salesledger.event.id"
"""Unique identifier for the event (UUID string)."""

ATTR_EVENT_TYPE = "salesledger.event.type"
"""Type tag of the event (e.g., 'SaleCreated')."""

ATTR_EVENT_COUNT = "salesledger.event.count"
"""Number of events in an operation (integer)."""

ATTR_OUTBOX_ID = "salesledger.outbox.id"
"""Identifier of an outbox record (UUID string)."""

ATTR_BATCH_SIZE = "salesledger.batch.size"
"""Maximum number of records requested in a poll (integer)."""

ATTR_SUBSCRIBER_NAME = "salesledger.subscriber.name"
"""Name of the subscriber receiving an event (string)."""

ATTR_SUBSCRIBER_SUCCESS = "salesledger.subscriber.success"
"""Whether the subscriber handled the event without error (boolean)."""

# =============================================================================
# Command Attributes
# =============================================================================

ATTR_COMMAND_TYPE = "salesledger.command.type"
"""Name of the command being handled (string)."""

ATTR_REQUEST_ID = "salesledger.request.id"
"""Caller-supplied idempotency key (string)."""

ATTR_RETRY_ATTEMPT = "salesledger.retry.attempt"
"""Zero-based attempt number of a retried operation (integer)."""

# =============================================================================
# Database Attributes (OTEL semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite', 'memory')."""

__all__ = [
    "ATTR_SALE_ID",
    "ATTR_SALE_NUMBER",
    "ATTR_PARTITION_ID",
    "ATTR_VERSION",
    "ATTR_EVENT_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_EVENT_COUNT",
    "ATTR_OUTBOX_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_SUBSCRIBER_NAME",
    "ATTR_SUBSCRIBER_SUCCESS",
    "ATTR_COMMAND_TYPE",
    "ATTR_REQUEST_ID",
    "ATTR_RETRY_ATTEMPT",
    "ATTR_DB_SYSTEM",
]
