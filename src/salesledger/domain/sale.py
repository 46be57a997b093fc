"""
The Sale aggregate.

A sale is the consistency boundary for its line items: quantities of the
same product are always consolidated into one line, no product may exceed
the discount policy limit, and a cancelled sale accepts no further changes.

Every mutating operation returns a Result that carries the events it
produced. The same events stay in the aggregate's uncommitted buffer until
the repository has written them to the outbox and calls clear_events().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from salesledger.domain.discount import DiscountPolicy
from salesledger.events.base import DomainEvent
from salesledger.events.sales import (
    SALE_AGGREGATE_TYPE,
    ItemCancelled,
    SaleCancelled,
    SaleCreated,
    SaleModified,
)
from salesledger.exceptions import InvalidSaleError
from salesledger.result import Result

logger = logging.getLogger(__name__)

MAX_UNIT_PRICE = Decimal("999999.99")
CENTS = Decimal("0.01")
DEFAULT_CANCELLATION_REASON = "Cancelled by user"


class SaleStatus(str, Enum):
    """
    Lifecycle status of a sale.

    ACTIVE and PENDING_VALIDATION can move into each other; both can move to
    CANCELLED, which is terminal.
    """

    ACTIVE = "active"
    PENDING_VALIDATION = "pending_validation"
    CANCELLED = "cancelled"


class SaleItem(BaseModel):
    """
    A consolidated product line.

    The discount is derived from the product's total quantity by the
    discount policy and is never set independently by callers.
    """

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., gt=0, le=MAX_UNIT_PRICE)
    discount: Decimal = Field(default=Decimal("0"), ge=0, lt=1)

    @property
    def gross_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENTS, rounding=ROUND_HALF_UP)

    @property
    def total(self) -> Decimal:
        """quantity x unit_price x (1 - discount), rounded to cents."""
        return (self.unit_price * self.quantity * (1 - self.discount)).quantize(
            CENTS, rounding=ROUND_HALF_UP
        )


@dataclass(frozen=True)
class SaleMemento:
    """Snapshot of a sale's mutable state, used to undo a failed persist."""

    number: int
    status: SaleStatus
    items: tuple[SaleItem, ...]
    uncommitted_events: tuple[DomainEvent, ...]
    version: int


def _is_empty(value: UUID | None) -> bool:
    return value is None or value.int == 0


def _to_decimal(value: Decimal | int | str | float) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class Sale:
    """
    Aggregate root for a sale.

    Attributes:
        id: Unique identifier, generated at creation
        number: Partition-scoped sequential number (0 until persisted)
        customer_id: Customer the sale belongs to
        partition_id: Branch whose sequence numbers the sale
        status: Current SaleStatus
        created_at: Creation timestamp (UTC)
        items: Line items, one per product, in insertion order
        version: Persisted row version used for optimistic concurrency

    Example:
        >>> sale = Sale.create(customer_id, branch_id)
        >>> result = sale.add_item(product_id, 3, Decimal("100"))
        >>> result.is_success
        True
        >>> sale.total
        Decimal('300.00')
    """

    aggregate_type: str = SALE_AGGREGATE_TYPE

    def __init__(
        self,
        sale_id: UUID,
        customer_id: UUID,
        partition_id: UUID,
        *,
        number: int = 0,
        status: SaleStatus = SaleStatus.ACTIVE,
        created_at: datetime | None = None,
        items: list[SaleItem] | tuple[SaleItem, ...] = (),
        version: int = 0,
        discount_policy: DiscountPolicy | None = None,
    ) -> None:
        self._id = sale_id
        self._customer_id = customer_id
        self._partition_id = partition_id
        self._number = number
        self._status = status
        self._created_at = created_at or datetime.now(UTC)
        self._items: dict[UUID, SaleItem] = {item.product_id: item for item in items}
        self._version = version
        self._policy = discount_policy or DiscountPolicy()
        self._uncommitted_events: list[DomainEvent] = []

    @classmethod
    def create(
        cls,
        customer_id: UUID | None,
        partition_id: UUID | None,
        discount_policy: DiscountPolicy | None = None,
    ) -> Sale:
        """
        Start a new, empty, active sale with number 0.

        Raises:
            InvalidSaleError: If customer_id or partition_id is empty
        """
        if _is_empty(customer_id):
            raise InvalidSaleError("customer id is required")
        if _is_empty(partition_id):
            raise InvalidSaleError("partition id is required")
        assert customer_id is not None and partition_id is not None
        return cls(uuid4(), customer_id, partition_id, discount_policy=discount_policy)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def id(self) -> UUID:
        return self._id

    @property
    def number(self) -> int:
        return self._number

    @property
    def customer_id(self) -> UUID:
        return self._customer_id

    @property
    def partition_id(self) -> UUID:
        return self._partition_id

    @property
    def status(self) -> SaleStatus:
        return self._status

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def version(self) -> int:
        return self._version

    @property
    def items(self) -> tuple[SaleItem, ...]:
        return tuple(self._items.values())

    @property
    def is_cancelled(self) -> bool:
        return self._status is SaleStatus.CANCELLED

    @property
    def total(self) -> Decimal:
        """Sum of all line totals."""
        return sum((item.total for item in self._items.values()), Decimal("0.00"))

    @property
    def uncommitted_events(self) -> list[DomainEvent]:
        """Events recorded since the last commit (a copy)."""
        return self._uncommitted_events.copy()

    @property
    def pending_events(self) -> list[DomainEvent]:
        """Alias of uncommitted_events."""
        return self.uncommitted_events

    @property
    def has_uncommitted_events(self) -> bool:
        return len(self._uncommitted_events) > 0

    def quantity_of(self, product_id: UUID) -> int:
        """Total quantity of a product in this sale (0 if absent)."""
        item = self._items.get(product_id)
        return item.quantity if item else 0

    def get_item(self, product_id: UUID) -> SaleItem | None:
        return self._items.get(product_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def add_item(
        self,
        product_id: UUID | None,
        quantity: int,
        unit_price: Decimal | int | str | float,
    ) -> Result[SaleItem]:
        """
        Add units of a product, consolidating with any existing line.

        The consolidated line takes the new unit price, and its discount is
        recomputed from the new total quantity.

        Returns:
            Success with the resulting line and a SaleModified event, or a
            failure describing the first rule that was broken. A failure
            leaves the sale unchanged.
        """
        if self.is_cancelled:
            return Result.failure("cannot add items to a cancelled sale")
        if _is_empty(product_id):
            return Result.failure("product id is required")
        assert product_id is not None
        if quantity <= 0:
            return Result.failure("quantity must be greater than zero")
        price = _to_decimal(unit_price)
        if price <= 0 or price > MAX_UNIT_PRICE:
            return Result.failure(
                f"unit price must be greater than zero and at most {MAX_UNIT_PRICE}"
            )

        new_quantity = self.quantity_of(product_id) + quantity
        if not self._policy.allows(new_quantity):
            return Result.failure(
                f"cannot sell more than {self._policy.max_quantity} units of the same product"
            )

        item = SaleItem(
            product_id=product_id,
            quantity=new_quantity,
            unit_price=price,
            discount=self._policy.calculate(new_quantity),
        )
        self._items[product_id] = item
        event = self._record(SaleModified(aggregate_id=self._id, product_ids=(product_id,)))
        return Result.success(item, events=(event,))

    def remove_item(self, product_id: UUID, quantity: int | None = None) -> Result[SaleItem]:
        """
        Remove a product line, or part of its quantity.

        Args:
            product_id: Product to remove
            quantity: Units to remove; None removes the whole line

        Returns:
            Success with an ItemCancelled event when the line is gone, or a
            SaleModified event (and the adjusted line as value) when units
            remain.
        """
        if self.is_cancelled:
            return Result.failure("cannot remove items from a cancelled sale")
        item = self._items.get(product_id)
        if item is None:
            return Result.failure(f"product {product_id} is not part of this sale")

        if quantity is None:
            quantity = item.quantity
        if quantity <= 0:
            return Result.failure("quantity must be greater than zero")
        if quantity > item.quantity:
            return Result.failure(
                f"cannot remove {quantity} units of product {product_id}: "
                f"only {item.quantity} in the sale"
            )

        remaining = item.quantity - quantity
        if remaining == 0:
            del self._items[product_id]
            event: DomainEvent = ItemCancelled(aggregate_id=self._id, product_id=product_id)
            return Result.success(None, events=(self._record(event),))

        adjusted = item.model_copy(
            update={"quantity": remaining, "discount": self._policy.calculate(remaining)}
        )
        self._items[product_id] = adjusted
        event = SaleModified(aggregate_id=self._id, product_ids=(product_id,))
        return Result.success(adjusted, events=(self._record(event),))

    def cancel(self, reason: str = DEFAULT_CANCELLATION_REASON) -> Result[None]:
        """Cancel the sale. Cancelled is terminal."""
        if self.is_cancelled:
            return Result.failure("sale is already cancelled")
        self._status = SaleStatus.CANCELLED
        event = self._record(SaleCancelled(aggregate_id=self._id, reason=reason))
        return Result.success(None, events=(event,))

    def confirm(self) -> Result[None]:
        """Move a sale awaiting validation back to active. No event is recorded."""
        if self.is_cancelled:
            return Result.failure("cannot confirm a cancelled sale")
        self._status = SaleStatus.ACTIVE
        return Result.success()

    def mark_pending_validation(self) -> Result[None]:
        """Flag the sale for validation. No event is recorded."""
        if self.is_cancelled:
            return Result.failure("cannot flag a cancelled sale for validation")
        self._status = SaleStatus.PENDING_VALIDATION
        return Result.success()

    def assign_number(self, number: int) -> Result[None]:
        """
        Set the partition-scoped sale number and record SaleCreated.

        Called once by the repository, inside the persist transaction,
        after the sequence allocator produced the number.

        Raises:
            InvalidSaleError: If number is not positive or a number was
                already assigned
        """
        if number <= 0:
            raise InvalidSaleError(f"sale number must be positive, got {number}")
        if self._number != 0:
            raise InvalidSaleError(f"sale {self._id} already has number {self._number}")
        self._number = number
        event = self._record(
            SaleCreated(
                aggregate_id=self._id,
                sale_number=number,
                customer_id=self._customer_id,
                partition_id=self._partition_id,
            )
        )
        return Result.success(None, events=(event,))

    # ------------------------------------------------------------------
    # Persistence support
    # ------------------------------------------------------------------

    def clear_events(self) -> list[DomainEvent]:
        """
        Empty the uncommitted event buffer.

        Only the repository calls this, after the events were written to the
        outbox in the same transaction as the sale.

        Returns:
            The events that were cleared
        """
        events = self._uncommitted_events.copy()
        self._uncommitted_events.clear()
        return events

    def mark_persisted(self, version: int) -> None:
        """Record the row version the sale was stored with."""
        self._version = version

    def memento(self) -> SaleMemento:
        return SaleMemento(
            number=self._number,
            status=self._status,
            items=self.items,
            uncommitted_events=tuple(self._uncommitted_events),
            version=self._version,
        )

    def restore(self, memento: SaleMemento) -> None:
        """Roll the sale back to a memento taken earlier."""
        self._number = memento.number
        self._status = memento.status
        self._items = {item.product_id: item for item in memento.items}
        self._uncommitted_events = list(memento.uncommitted_events)
        self._version = memento.version

    def _record(self, event: DomainEvent) -> DomainEvent:
        self._uncommitted_events.append(event)
        logger.debug(
            "Recorded %s for sale %s",
            event.event_type,
            self._id,
            extra={"sale_id": str(self._id), "event_type": event.event_type},
        )
        return event

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view of the sale's current state."""
        return {
            "id": str(self._id),
            "number": self._number,
            "customer_id": str(self._customer_id),
            "partition_id": str(self._partition_id),
            "status": self._status.value,
            "created_at": self._created_at.isoformat(),
            "total": str(self.total),
            "items": [item.model_dump(mode="json") for item in self._items.values()],
        }

    def __repr__(self) -> str:
        return (
            f"Sale(id={self._id}, number={self._number}, status={self._status.value}, "
            f"items={len(self._items)}, uncommitted={len(self._uncommitted_events)})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Sale):
            return NotImplemented
        return self._id == other._id

    def __hash__(self) -> int:
        return hash(self._id)


__all__ = [
    "Sale",
    "SaleItem",
    "SaleStatus",
    "SaleMemento",
    "MAX_UNIT_PRICE",
    "DEFAULT_CANCELLATION_REASON",
]
