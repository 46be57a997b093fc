"""
Command and query handlers for sales.

Handlers orchestrate a command end to end:

1. Answer replays from the idempotency store without re-applying anything
2. Load or create the Sale and apply the change through the aggregate
3. Persist the sale together with its events (number allocation and version
   conflicts are retried)
4. Record the request id

Business rule violations come back as Result.failure(message). Unexpected
errors are logged and reported with a generic message, so internal details
never reach callers.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from salesledger.domain.sale import DEFAULT_CANCELLATION_REASON, Sale, SaleStatus
from salesledger.exceptions import (
    ConcurrencyExhaustedError,
    InvalidSaleError,
    SaleNotFoundError,
)
from salesledger.integrations import CustomerDirectory, StockReservation
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_COMMAND_TYPE,
    ATTR_REQUEST_ID,
    ATTR_SALE_ID,
)
from salesledger.repositories.idempotency import IdempotencyRepository
from salesledger.repositories.sales import MAX_PAGE_SIZE, SaleQuery, SaleRepository
from salesledger.result import Result
from salesledger.retry import ExponentialBackoffRetryStrategy, RetryStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_ERROR_MESSAGE = "An internal error occurred while processing the request"
CONCURRENCY_ERROR_MESSAGE = "The sale was modified concurrently; please retry the request"
DUPLICATE_REQUEST_REASON = "Duplicate request"


# =============================================================================
# Commands and queries
# =============================================================================


class SaleItemInput(BaseModel):
    """A requested line: quantity and unit price are checked by the aggregate."""

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int
    unit_price: Decimal


class CreateSale(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    customer_id: UUID
    partition_id: UUID
    items: list[SaleItemInput] = Field(default_factory=list)


class UpdateSale(BaseModel):
    """Replace a sale's items with the given list."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    sale_id: UUID
    items: list[SaleItemInput] = Field(default_factory=list)


class ConfirmSale(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    sale_id: UUID


class CancelSale(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    sale_id: UUID
    reason: str | None = None


class GetSale(BaseModel):
    model_config = ConfigDict(frozen=True)

    sale_id: UUID


class ListSales(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=MAX_PAGE_SIZE)
    customer_id: UUID | None = None
    partition_id: UUID | None = None
    status: SaleStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


# =============================================================================
# Read models
# =============================================================================


class SaleItemSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int
    unit_price: Decimal
    discount: Decimal
    total: Decimal


class SaleSummary(BaseModel):
    """What callers see of a sale."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    number: int
    created_at: datetime
    customer_id: UUID
    partition_id: UUID
    status: SaleStatus
    total: Decimal
    items: list[SaleItemSummary]

    @classmethod
    def from_sale(cls, sale: Sale) -> "SaleSummary":
        return cls(
            id=sale.id,
            number=sale.number,
            created_at=sale.created_at,
            customer_id=sale.customer_id,
            partition_id=sale.partition_id,
            status=sale.status,
            total=sale.total,
            items=[
                SaleItemSummary(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount=item.discount,
                    total=item.total,
                )
                for item in sale.items
            ],
        )


class SaleSummaryPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[SaleSummary]
    total_count: int
    page: int
    page_size: int


# =============================================================================
# Handlers
# =============================================================================


class SaleCommandHandler:
    """
    Handles sale commands.

    Example:
        >>> handler = SaleCommandHandler(sales, idempotency, customers, stock)
        >>> result = await handler.create_sale(
        ...     CreateSale(
        ...         request_id="req-1",
        ...         customer_id=customer_id,
        ...         partition_id=branch_id,
        ...         items=[SaleItemInput(product_id=p, quantity=4, unit_price=Decimal("10"))],
        ...     )
        ... )
        >>> result.value.number
        1
    """

    def __init__(
        self,
        sales: SaleRepository,
        idempotency: IdempotencyRepository,
        customers: CustomerDirectory,
        stock: StockReservation,
        retry_strategy: RetryStrategy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._sales = sales
        self._idempotency = idempotency
        self._customers = customers
        self._stock = stock
        self._retry = retry_strategy or ExponentialBackoffRetryStrategy()

    # ------------------------------------------------------------------
    # CreateSale
    # ------------------------------------------------------------------

    async def create_sale(self, command: CreateSale) -> Result[SaleSummary]:
        return await self._guarded(command, self._create_sale)

    async def _create_sale(self, command: CreateSale) -> Result[SaleSummary]:
        replay_id = await self._idempotency.get_aggregate_id(command.request_id)
        if replay_id is not None:
            replay = await self._sales.get(replay_id)
            if replay is not None:
                logger.info(
                    "Request %s already processed; returning sale %s",
                    command.request_id,
                    replay_id,
                    extra={"request_id": command.request_id, "sale_id": str(replay_id)},
                )
                return Result.success(SaleSummary.from_sale(replay))

        if not command.items:
            return Result.failure("a sale must have at least one item")

        try:
            sale = Sale.create(command.customer_id, command.partition_id)
        except InvalidSaleError as e:
            return Result.failure(str(e))

        if not await self._customer_exists(command.customer_id):
            sale.mark_pending_validation()

        for item in command.items:
            added = sale.add_item(item.product_id, item.quantity, item.unit_price)
            if added.is_failure:
                logger.warning(
                    "Rejected item %s for new sale: %s",
                    item.product_id,
                    added.error,
                    extra={"request_id": command.request_id, "product_id": str(item.product_id)},
                )
                return Result.failure(added.error or "invalid item")

        wanted = {item.product_id: item.quantity for item in sale.items}
        refused = await self._reserve(wanted)
        if refused is not None:
            return Result.failure(f"insufficient stock for product {refused}")

        try:
            await self._sales.add(sale)
        except BaseException:
            await self._release(wanted)
            raise

        if not await self._idempotency.save(command.request_id, "CreateSale", sale.id):
            return await self._resolve_duplicate_create(command, sale)

        logger.info(
            "Created sale %s with number %d (status %s)",
            sale.id,
            sale.number,
            sale.status.value,
            extra={
                "request_id": command.request_id,
                "sale_id": str(sale.id),
                "sale_number": sale.number,
                "customer_id": str(sale.customer_id),
                "status": sale.status.value,
            },
        )
        return Result.success(SaleSummary.from_sale(sale))

    async def _resolve_duplicate_create(
        self, command: CreateSale, sale: Sale
    ) -> Result[SaleSummary]:
        """
        A concurrent request with the same id won the idempotency record.

        The sale created here is cancelled, and the winner's sale is
        returned so both callers see the same result.
        """
        if sale.cancel(DUPLICATE_REQUEST_REASON).is_success:
            await self._sales.update(sale)
        winner_id = await self._idempotency.get_aggregate_id(command.request_id)
        winner = await self._sales.get(winner_id) if winner_id else None
        logger.warning(
            "Request %s was processed concurrently; cancelled duplicate sale %s",
            command.request_id,
            sale.id,
            extra={
                "request_id": command.request_id,
                "sale_id": str(sale.id),
                "winner_sale_id": str(winner_id) if winner_id else None,
            },
        )
        if winner is None:
            return Result.failure(INTERNAL_ERROR_MESSAGE)
        return Result.success(SaleSummary.from_sale(winner))

    # ------------------------------------------------------------------
    # UpdateSale
    # ------------------------------------------------------------------

    async def update_sale(self, command: UpdateSale) -> Result[SaleSummary]:
        return await self._guarded(command, self._update_sale)

    async def _update_sale(self, command: UpdateSale) -> Result[SaleSummary]:
        replay_id = await self._idempotency.get_aggregate_id(command.request_id)
        if replay_id is not None:
            replay = await self._sales.get(replay_id)
            if replay is not None:
                return Result.success(SaleSummary.from_sale(replay))

        async def attempt() -> Result[SaleSummary]:
            sale = await self._load(command.sale_id)
            before = {item.product_id: item.quantity for item in sale.items}

            applied = self._apply_items(sale, command.items)
            if applied.is_failure:
                return Result.failure(applied.error or "invalid items")

            increases = {
                item.product_id: item.quantity - before.get(item.product_id, 0)
                for item in sale.items
                if item.quantity > before.get(item.product_id, 0)
            }
            refused = await self._reserve(increases)
            if refused is not None:
                return Result.failure(f"insufficient stock for product {refused}")

            try:
                await self._sales.update(sale)
            except BaseException:
                await self._release(increases)
                raise
            return Result.success(SaleSummary.from_sale(sale))

        result = await self._retry.execute(attempt, operation_name="update_sale")
        if result.is_success:
            await self._idempotency.save(command.request_id, "UpdateSale", command.sale_id)
            logger.info(
                "Updated sale %s",
                command.sale_id,
                extra={"request_id": command.request_id, "sale_id": str(command.sale_id)},
            )
        return result

    @staticmethod
    def _apply_items(sale: Sale, items: list[SaleItemInput]) -> Result[None]:
        """
        Bring the sale's lines in line with the requested items.

        Repeated products are summed first, priced at their last entry like
        add_item() does. Products missing from the request are removed, new
        products are added, and existing products are increased or decreased
        by the difference. Stops at the first failure.
        """
        merged: dict[UUID, SaleItemInput] = {}
        for item in items:
            previous = merged.get(item.product_id)
            if previous is None:
                merged[item.product_id] = item
                continue
            if previous.quantity <= 0 or item.quantity <= 0:
                return Result.failure("quantity must be greater than zero")
            merged[item.product_id] = item.model_copy(
                update={"quantity": previous.quantity + item.quantity}
            )
        items = list(merged.values())

        requested = set(merged)
        for product_id in [item.product_id for item in sale.items]:
            if product_id not in requested:
                removed = sale.remove_item(product_id)
                if removed.is_failure:
                    return Result.failure(removed.error or "cannot remove item")

        for item in items:
            difference = item.quantity - sale.quantity_of(item.product_id)
            if sale.get_item(item.product_id) is None:
                changed = sale.add_item(item.product_id, item.quantity, item.unit_price)
            elif difference > 0:
                changed = sale.add_item(item.product_id, difference, item.unit_price)
            elif difference < 0:
                changed = sale.remove_item(item.product_id, -difference)
            else:
                continue
            if changed.is_failure:
                return Result.failure(changed.error or "invalid item")
        return Result.success()

    # ------------------------------------------------------------------
    # ConfirmSale / CancelSale
    # ------------------------------------------------------------------

    async def confirm_sale(self, command: ConfirmSale) -> Result[None]:
        return await self._guarded(command, self._confirm_sale)

    async def _confirm_sale(self, command: ConfirmSale) -> Result[None]:
        if await self._idempotency.exists(command.request_id):
            return Result.success()

        async def attempt() -> Result[None]:
            sale = await self._load(command.sale_id)
            if sale.status is SaleStatus.ACTIVE:
                return Result.success()
            confirmed = sale.confirm()
            if confirmed.is_failure:
                return confirmed
            await self._sales.update(sale)
            return confirmed

        result = await self._retry.execute(attempt, operation_name="confirm_sale")
        if result.is_success:
            await self._idempotency.save(command.request_id, "ConfirmSale", command.sale_id)
            logger.info(
                "Confirmed sale %s",
                command.sale_id,
                extra={"request_id": command.request_id, "sale_id": str(command.sale_id)},
            )
        return result

    async def cancel_sale(self, command: CancelSale) -> Result[None]:
        return await self._guarded(command, self._cancel_sale)

    async def _cancel_sale(self, command: CancelSale) -> Result[None]:
        if await self._idempotency.exists(command.request_id):
            return Result.success()

        async def attempt() -> Result[None]:
            sale = await self._load(command.sale_id)
            cancelled = sale.cancel(command.reason or DEFAULT_CANCELLATION_REASON)
            if cancelled.is_failure:
                return cancelled
            await self._sales.update(sale)
            return cancelled

        result = await self._retry.execute(attempt, operation_name="cancel_sale")
        if result.is_success:
            await self._idempotency.save(command.request_id, "CancelSale", command.sale_id)
            logger.info(
                "Cancelled sale %s",
                command.sale_id,
                extra={"request_id": command.request_id, "sale_id": str(command.sale_id)},
            )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        command: CreateSale | UpdateSale | ConfirmSale | CancelSale,
        handler: Callable[..., Awaitable[Result[T]]],
    ) -> Result[T]:
        command_type = type(command).__name__
        attributes: dict[str, str] = {
            ATTR_COMMAND_TYPE: command_type,
            ATTR_REQUEST_ID: command.request_id,
        }
        sale_id = getattr(command, "sale_id", None)
        if sale_id is not None:
            attributes[ATTR_SALE_ID] = str(sale_id)

        with self._tracer.span(f"salesledger.handler.{command_type}", attributes) as span:
            try:
                return await handler(command)
            except SaleNotFoundError as e:
                return Result.failure(f"Sale {e.sale_id} not found")
            except ConcurrencyExhaustedError as e:
                logger.error(
                    "%s gave up after %d conflicting attempts",
                    command_type,
                    e.attempts,
                    extra={"request_id": command.request_id, "error": str(e)},
                )
                return Result.failure(CONCURRENCY_ERROR_MESSAGE)
            except Exception as e:
                if span:
                    span.record_exception(e)
                logger.error(
                    "Unhandled error processing %s: %s",
                    command_type,
                    e,
                    exc_info=True,
                    extra={"request_id": command.request_id},
                )
                return Result.failure(INTERNAL_ERROR_MESSAGE)

    async def _load(self, sale_id: UUID) -> Sale:
        sale = await self._sales.get(sale_id)
        if sale is None:
            raise SaleNotFoundError(sale_id)
        return sale

    async def _customer_exists(self, customer_id: UUID) -> bool:
        try:
            exists = await self._customers.customer_exists(customer_id)
        except Exception as e:
            logger.warning(
                "Customer check for %s failed; sale will await validation: %s",
                customer_id,
                e,
                extra={"customer_id": str(customer_id)},
            )
            return False
        if not exists:
            logger.warning(
                "Customer %s not found; sale will await validation",
                customer_id,
                extra={"customer_id": str(customer_id)},
            )
        return exists

    async def _reserve(self, quantities: dict[UUID, int]) -> UUID | None:
        """
        Reserve stock for every product, all or nothing.

        Returns:
            The first product that was refused, or None when everything was
            reserved
        """
        reserved: dict[UUID, int] = {}
        try:
            for product_id, quantity in quantities.items():
                if not await self._stock.reserve(product_id, quantity):
                    await self._release(reserved)
                    return product_id
                reserved[product_id] = quantity
        except BaseException:
            await self._release(reserved)
            raise
        return None

    async def _release(self, quantities: dict[UUID, int]) -> None:
        for product_id, quantity in quantities.items():
            try:
                await self._stock.release(product_id, quantity)
            except Exception as e:
                logger.error(
                    "Failed to release %d units of product %s: %s",
                    quantity,
                    product_id,
                    e,
                    exc_info=True,
                    extra={"product_id": str(product_id), "quantity": quantity},
                )


class SaleQueryHandler:
    """Read-side handler for sales."""

    def __init__(
        self,
        sales: SaleRepository,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._sales = sales

    async def get_sale(self, query: GetSale) -> Result[SaleSummary]:
        with self._tracer.span("salesledger.handler.GetSale", {ATTR_SALE_ID: str(query.sale_id)}):
            try:
                sale = await self._sales.get(query.sale_id)
            except Exception as e:
                logger.error(
                    "Failed to load sale %s: %s",
                    query.sale_id,
                    e,
                    exc_info=True,
                    extra={"sale_id": str(query.sale_id)},
                )
                return Result.failure(INTERNAL_ERROR_MESSAGE)
            if sale is None:
                return Result.failure(f"Sale {query.sale_id} not found")
            return Result.success(SaleSummary.from_sale(sale))

    async def list_sales(self, query: ListSales) -> SaleSummaryPage:
        """List sales, newest first."""
        with self._tracer.span(
            "salesledger.handler.ListSales",
            {"page": query.page, "page_size": query.page_size},
        ):
            page = await self._sales.list(
                SaleQuery(
                    customer_id=query.customer_id,
                    partition_id=query.partition_id,
                    status=query.status,
                    date_from=query.date_from,
                    date_to=query.date_to,
                    page=query.page,
                    page_size=query.page_size,
                )
            )
            return SaleSummaryPage(
                items=[SaleSummary.from_sale(sale) for sale in page.items],
                total_count=page.total_count,
                page=page.page,
                page_size=page.page_size,
            )


__all__ = [
    "INTERNAL_ERROR_MESSAGE",
    "CONCURRENCY_ERROR_MESSAGE",
    "SaleItemInput",
    "CreateSale",
    "UpdateSale",
    "ConfirmSale",
    "CancelSale",
    "GetSale",
    "ListSales",
    "SaleItemSummary",
    "SaleSummary",
    "SaleSummaryPage",
    "SaleCommandHandler",
    "SaleQueryHandler",
]
