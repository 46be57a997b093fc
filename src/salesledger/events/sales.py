"""
Domain events raised by the Sale aggregate.

The four classes here are the complete, closed set of events a sale can
produce. Each carries the sale id as ``aggregate_id`` plus its own payload.
"""

from uuid import UUID

from pydantic import Field

from salesledger.events.base import DomainEvent

SALE_AGGREGATE_TYPE = "Sale"


class SaleEvent(DomainEvent):
    """Common base for events belonging to a sale."""

    aggregate_type: str = SALE_AGGREGATE_TYPE

    @property
    def sale_id(self) -> UUID:
        """The sale this event belongs to."""
        return self.aggregate_id


class SaleCreated(SaleEvent):
    """Recorded when a sale receives its partition-scoped number."""

    sale_number: int = Field(..., gt=0)
    customer_id: UUID
    partition_id: UUID


class SaleModified(SaleEvent):
    """Recorded when the quantity or price of one or more lines changed."""

    product_ids: tuple[UUID, ...] = Field(..., min_length=1)


class SaleCancelled(SaleEvent):
    """Recorded when a sale is cancelled."""

    reason: str


class ItemCancelled(SaleEvent):
    """Recorded when a product line is removed from a sale entirely."""

    product_id: UUID


__all__ = [
    "SALE_AGGREGATE_TYPE",
    "SaleEvent",
    "SaleCreated",
    "SaleModified",
    "SaleCancelled",
    "ItemCancelled",
]
