"""
Observability utilities for salesledger.

Provides the composition-based tracer used by every persistence and
dispatch component, and the standard span attribute names.

Note:
    OpenTelemetry is an optional dependency. When it is not installed,
    create_tracer() returns a NullTracer.
"""

from salesledger.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_COMMAND_TYPE,
    ATTR_DB_SYSTEM,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_OUTBOX_ID,
    ATTR_PARTITION_ID,
    ATTR_REQUEST_ID,
    ATTR_RETRY_ATTEMPT,
    ATTR_SALE_ID,
    ATTR_SALE_NUMBER,
    ATTR_SUBSCRIBER_NAME,
    ATTR_SUBSCRIBER_SUCCESS,
    ATTR_VERSION,
)
from salesledger.observability.tracer import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_SIZE",
    "ATTR_COMMAND_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_EVENT_COUNT",
    "ATTR_EVENT_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_OUTBOX_ID",
    "ATTR_PARTITION_ID",
    "ATTR_REQUEST_ID",
    "ATTR_RETRY_ATTEMPT",
    "ATTR_SALE_ID",
    "ATTR_SALE_NUMBER",
    "ATTR_SUBSCRIBER_NAME",
    "ATTR_SUBSCRIBER_SUCCESS",
    "ATTR_VERSION",
]
