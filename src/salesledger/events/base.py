"""
Base class for domain events.

Events are immutable records of things that happened to a sale. They are
captured in the outbox in the same transaction as the state change that
produced them and delivered to subscribers afterwards.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Self
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class DomainEvent(BaseModel):
    """
    Base class for all domain events with automatic event_type derivation.

    The event_type field is set to the class name unless a subclass declares
    its own default. It is the tag stored in the outbox and used by the
    event registry to pick the class to decode into.

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: Type tag of the event (auto-derived from class name)
        occurred_at: When the event occurred (UTC timestamp)
        aggregate_id: ID of the aggregate this event belongs to
        aggregate_type: Type of aggregate (e.g., 'Sale')

    Example:
        >>> class OrderCreated(DomainEvent):
        ...     aggregate_type: str = "Order"
        ...     order_number: str
        ...
        >>> event = OrderCreated(aggregate_id=uuid4(), order_number="ORD-001")
        >>> assert event.event_type == "OrderCreated"
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier",
    )
    event_type: str = Field(
        default="",
        description="Type of event (auto-derived from class name if not set)",
    )
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When event occurred (UTC)",
    )
    aggregate_id: UUID = Field(
        ...,
        description="ID of the aggregate this event belongs to",
    )
    aggregate_type: str = Field(
        ...,
        description="Type of aggregate (e.g., 'Sale')",
    )

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "event_type" in cls.__dict__:
            value = cls.__dict__["event_type"]
            if isinstance(value, str) and value and value != cls.__name__:
                logger.warning(
                    "Event class %s has event_type='%s' which differs from class name.",
                    cls.__name__,
                    value,
                )

    @model_validator(mode="before")
    @classmethod
    def _ensure_event_type(cls, data: Any) -> Any:
        """Fill event_type from the field default or the class name when missing."""
        if isinstance(data, dict) and not data.get("event_type"):
            field_info = cls.model_fields.get("event_type")
            field_default = field_info.default if field_info else ""
            data = dict(data)
            data["event_type"] = field_default or cls.__name__
        return data

    def __str__(self) -> str:
        return f"{self.event_type}(event_id={self.event_id}, aggregate_id={self.aggregate_id})"

    def to_json(self) -> str:
        """Serialize the event to the JSON text stored in the outbox."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        """
        Create event from its JSON serialization.

        Raises:
            ValidationError: If data is not valid JSON or doesn't match the schema
        """
        return cls.model_validate_json(data)


__all__ = ["DomainEvent"]
