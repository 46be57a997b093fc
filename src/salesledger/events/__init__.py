"""Domain events and the registry used to decode them from the outbox."""

from salesledger.events.base import DomainEvent
from salesledger.events.registry import (
    SALE_EVENT_REGISTRY,
    DuplicateEventTypeError,
    EventRegistry,
    UnknownEventTypeError,
)
from salesledger.events.sales import (
    SALE_AGGREGATE_TYPE,
    ItemCancelled,
    SaleCancelled,
    SaleCreated,
    SaleEvent,
    SaleModified,
)

__all__ = [
    "DomainEvent",
    "SaleEvent",
    "SaleCreated",
    "SaleModified",
    "SaleCancelled",
    "ItemCancelled",
    "SALE_AGGREGATE_TYPE",
    "EventRegistry",
    "SALE_EVENT_REGISTRY",
    "UnknownEventTypeError",
    "DuplicateEventTypeError",
]
