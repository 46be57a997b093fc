"""
Closed event type registry for decoding outbox records.

Outbox records store an event type tag and a JSON payload. The dispatcher
resolves the tag through an explicit registry instead of looking classes up
by name at runtime, so only the tags listed here can ever be decoded.

Usage:
    event = SALE_EVENT_REGISTRY.decode("SaleCreated", payload_json)

    # An isolated registry, e.g. in tests
    registry = EventRegistry([SaleCreated, SaleCancelled])
    registry.contains("SaleModified")  # False
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from pydantic import ValidationError

from salesledger.events.base import DomainEvent
from salesledger.events.sales import (
    ItemCancelled,
    SaleCancelled,
    SaleCreated,
    SaleModified,
)
from salesledger.exceptions import SerializationError

logger = logging.getLogger(__name__)


class UnknownEventTypeError(KeyError):
    """
    Raised when an event type tag is not part of the registry.

    Lists the known tags to make a drifted tag easy to spot in logs.
    """

    def __init__(self, event_type: str, available_types: list[str]) -> None:
        self.event_type = event_type
        self.available_types = available_types
        available = ", ".join(sorted(available_types)) if available_types else "none"
        super().__init__(f"Unknown event type: '{event_type}'. Available types: {available}.")


class DuplicateEventTypeError(ValueError):
    """Raised when two different classes claim the same event type tag."""

    def __init__(
        self,
        event_type: str,
        existing_class: type[DomainEvent],
        new_class: type[DomainEvent],
    ) -> None:
        self.event_type = event_type
        self.existing_class = existing_class
        self.new_class = new_class
        super().__init__(
            f"Event type '{event_type}' is already registered to {existing_class.__name__}. "
            f"Cannot register {new_class.__name__} with the same type name."
        )


class EventRegistry:
    """
    Immutable mapping of event type tags to event classes.

    The set of types is fixed at construction time. There is no global
    mutable registry and no decorator-based registration.

    Example:
        >>> registry = EventRegistry([SaleCreated, SaleCancelled])
        >>> registry.get("SaleCreated")
        <class 'salesledger.events.sales.SaleCreated'>
        >>> event = registry.decode("SaleCancelled", '{"aggregate_id": "...", "reason": "x"}')
    """

    def __init__(self, event_classes: Iterable[type[DomainEvent]]) -> None:
        registry: dict[str, type[DomainEvent]] = {}
        for event_class in event_classes:
            event_type = self._resolve_event_type(event_class)
            existing = registry.get(event_type)
            if existing is not None and existing is not event_class:
                raise DuplicateEventTypeError(event_type, existing, event_class)
            registry[event_type] = event_class
        self._registry = registry
        logger.debug(
            "Event registry built with %d types",
            len(registry),
            extra={"event_types": sorted(registry)},
        )

    @staticmethod
    def _resolve_event_type(event_class: type[DomainEvent]) -> str:
        field_info = event_class.model_fields.get("event_type")
        if field_info and isinstance(field_info.default, str) and field_info.default:
            return field_info.default
        return event_class.__name__

    def get(self, event_type: str) -> type[DomainEvent]:
        """
        Get event class by type tag.

        Raises:
            UnknownEventTypeError: If event type is not registered
        """
        try:
            return self._registry[event_type]
        except KeyError:
            raise UnknownEventTypeError(event_type, list(self._registry)) from None

    def get_or_none(self, event_type: str) -> type[DomainEvent] | None:
        """Get event class by type tag, returning None if not found."""
        return self._registry.get(event_type)

    def contains(self, event_type: str) -> bool:
        """Check if an event type tag is registered."""
        return event_type in self._registry

    def list_types(self) -> list[str]:
        """Sorted list of registered event type tags."""
        return sorted(self._registry)

    def decode(self, event_type: str, event_data: str | bytes) -> DomainEvent:
        """
        Decode a serialized payload into its concrete event class.

        Args:
            event_type: Type tag stored alongside the payload
            event_data: JSON payload produced by DomainEvent.to_json()

        Returns:
            The decoded event

        Raises:
            UnknownEventTypeError: If the tag is not registered
            SerializationError: If the payload does not match the event schema
        """
        event_class = self.get(event_type)
        try:
            return event_class.from_json(event_data)
        except ValidationError as e:
            raise SerializationError(event_type, str(e)) from e

    def __len__(self) -> int:
        return len(self._registry)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._registry

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._registry))


SALE_EVENT_REGISTRY = EventRegistry([SaleCreated, SaleModified, SaleCancelled, ItemCancelled])
"""Registry of every event the Sale aggregate can produce."""


__all__ = [
    "EventRegistry",
    "UnknownEventTypeError",
    "DuplicateEventTypeError",
    "SALE_EVENT_REGISTRY",
]
