"""
In-process event subscribers.

Subscribers receive committed sale events from the OutboxDispatcher (and,
optionally, right after commit through InProcessEventPublisher). Delivery is
at-least-once, so every subscriber here tolerates seeing the same event
more than once.

Each invocation is isolated: invoke_subscriber() turns an exception into a
failed SubscriberResult instead of letting it escape, so one broken
subscriber never stops the others.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from salesledger.domain.sale import Sale
from salesledger.events.base import DomainEvent
from salesledger.events.sales import ItemCancelled, SaleCancelled, SaleCreated, SaleModified
from salesledger.integrations import StockReservation
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_SALE_ID,
    ATTR_SUBSCRIBER_NAME,
    ATTR_SUBSCRIBER_SUCCESS,
)

logger = logging.getLogger(__name__)

SaleLoader = Callable[[UUID], Awaitable[Sale | None]]


@runtime_checkable
class EventSubscriber(Protocol):
    """Receives sale events."""

    @property
    def name(self) -> str: ...

    async def handle(self, event: DomainEvent) -> None: ...


@dataclass(frozen=True)
class SubscriberResult:
    """Outcome of delivering one event to one subscriber."""

    subscriber: str
    success: bool
    error: str | None = None

    @classmethod
    def ok(cls, subscriber: str) -> "SubscriberResult":
        return cls(subscriber=subscriber, success=True)

    @classmethod
    def failed(cls, subscriber: str, error: str) -> "SubscriberResult":
        return cls(subscriber=subscriber, success=False, error=error)


async def invoke_subscriber(
    subscriber: EventSubscriber,
    event: DomainEvent,
    tracer: Tracer | None = None,
) -> SubscriberResult:
    """
    Deliver an event to one subscriber, converting errors into a result.

    Errors are logged with the subscriber name and event id.
    """
    tracer = tracer or create_tracer(__name__, False)
    with tracer.span(
        "salesledger.subscriber.handle",
        {
            ATTR_SUBSCRIBER_NAME: subscriber.name,
            ATTR_EVENT_TYPE: event.event_type,
            ATTR_EVENT_ID: str(event.event_id),
            ATTR_SALE_ID: str(event.aggregate_id),
        },
    ) as span:
        try:
            await subscriber.handle(event)
        except Exception as e:
            if span:
                span.set_attribute(ATTR_SUBSCRIBER_SUCCESS, False)
                span.record_exception(e)
            logger.error(
                "Subscriber %s failed processing %s: %s",
                subscriber.name,
                event.event_type,
                e,
                exc_info=True,
                extra={
                    "subscriber": subscriber.name,
                    "event_type": event.event_type,
                    "event_id": str(event.event_id),
                    "error": str(e),
                },
            )
            return SubscriberResult.failed(subscriber.name, str(e))

        if span:
            span.set_attribute(ATTR_SUBSCRIBER_SUCCESS, True)
        logger.debug(
            "Subscriber %s processed %s",
            subscriber.name,
            event.event_type,
            extra={"subscriber": subscriber.name, "event_id": str(event.event_id)},
        )
        return SubscriberResult.ok(subscriber.name)


class InProcessEventPublisher:
    """
    EventPublisher that hands committed events straight to subscribers.

    Used by sale repositories for publish-on-commit. Events are delivered in
    order, each to every subscriber in registration order.
    """

    def __init__(
        self,
        subscribers: Sequence[EventSubscriber],
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._subscribers = list(subscribers)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def publish(self, events: Sequence[DomainEvent]) -> list[SubscriberResult]:
        results: list[SubscriberResult] = []
        for event in events:
            for subscriber in self._subscribers:
                results.append(await invoke_subscriber(subscriber, event, self._tracer))
        return results


@dataclass(frozen=True)
class CustomerPurchase:
    """One entry of a customer's purchase history."""

    customer_id: UUID
    sale_id: UUID
    sale_number: int
    partition_id: UUID
    occurred_at: datetime


class CrmProjection:
    """
    Maintains customer purchase history from SaleCreated events.

    Errors are logged and swallowed so the CRM never blocks sale processing.
    """

    name = "crm"

    def __init__(self) -> None:
        self._history: dict[UUID, dict[UUID, CustomerPurchase]] = {}

    async def handle(self, event: DomainEvent) -> None:
        if not isinstance(event, SaleCreated):
            return
        try:
            purchases = self._history.setdefault(event.customer_id, {})
            purchases[event.aggregate_id] = CustomerPurchase(
                customer_id=event.customer_id,
                sale_id=event.aggregate_id,
                sale_number=event.sale_number,
                partition_id=event.partition_id,
                occurred_at=event.occurred_at,
            )
            logger.info(
                "Updated purchase history of customer %s with sale %s (number %d)",
                event.customer_id,
                event.aggregate_id,
                event.sale_number,
                extra={
                    "customer_id": str(event.customer_id),
                    "sale_id": str(event.aggregate_id),
                    "sale_number": event.sale_number,
                },
            )
        except Exception as e:
            logger.error(
                "Failed to update purchase history of customer %s: %s",
                event.customer_id,
                e,
                exc_info=True,
                extra={"customer_id": str(event.customer_id)},
            )

    def purchases_of(self, customer_id: UUID) -> list[CustomerPurchase]:
        """Purchases of a customer, oldest first."""
        purchases = self._history.get(customer_id, {})
        return sorted(purchases.values(), key=lambda p: p.occurred_at)


class InventoryProjection:
    """
    Returns reserved stock to the inventory when sales shrink.

    Stock is reserved by the command handlers before a sale is persisted.
    This projection tracks the units each sale holds (reloading the sale on
    SaleCreated and SaleModified) and releases:

    - the held units of a product on ItemCancelled
    - every held unit of the sale on SaleCancelled
    - the difference when a SaleModified shows a lower quantity

    Released units are forgotten, so redelivered events release nothing.
    Errors are logged and swallowed.
    """

    name = "inventory"

    def __init__(self, stock: StockReservation, load_sale: SaleLoader) -> None:
        self._stock = stock
        self._load_sale = load_sale
        self._held: dict[UUID, dict[UUID, int]] = {}

    def held_units(self, sale_id: UUID) -> dict[UUID, int]:
        return dict(self._held.get(sale_id, {}))

    async def handle(self, event: DomainEvent) -> None:
        try:
            if isinstance(event, (SaleCreated, SaleModified)):
                await self._sync(event.aggregate_id)
            elif isinstance(event, ItemCancelled):
                held = self._held.get(event.aggregate_id, {})
                quantity = held.pop(event.product_id, 0)
                await self._release(event.aggregate_id, event.product_id, quantity)
            elif isinstance(event, SaleCancelled):
                held = self._held.pop(event.aggregate_id, {})
                for product_id, quantity in held.items():
                    await self._release(event.aggregate_id, product_id, quantity)
        except Exception as e:
            logger.error(
                "Inventory update for sale %s failed: %s",
                event.aggregate_id,
                e,
                exc_info=True,
                extra={"sale_id": str(event.aggregate_id), "event_type": event.event_type},
            )

    async def _sync(self, sale_id: UUID) -> None:
        sale = await self._load_sale(sale_id)
        if sale is None or sale.is_cancelled:
            return
        current = {item.product_id: item.quantity for item in sale.items}
        held = self._held.setdefault(sale_id, {})
        for product_id, quantity in list(held.items()):
            remaining = current.get(product_id, 0)
            if remaining < quantity:
                await self._release(sale_id, product_id, quantity - remaining)
        self._held[sale_id] = current

    async def _release(self, sale_id: UUID, product_id: UUID, quantity: int) -> None:
        if quantity <= 0:
            return
        await self._stock.release(product_id, quantity)
        logger.info(
            "Released %d units of product %s from sale %s",
            quantity,
            product_id,
            sale_id,
            extra={"sale_id": str(sale_id), "product_id": str(product_id), "quantity": quantity},
        )


__all__ = [
    "EventSubscriber",
    "SubscriberResult",
    "invoke_subscriber",
    "InProcessEventPublisher",
    "CustomerPurchase",
    "CrmProjection",
    "InventoryProjection",
]
