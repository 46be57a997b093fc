"""
Unit tests for the sale command and query handlers.

Tests for:
- CreateSale: numbering, idempotent replay, customer fallback, stock checks
- UpdateSale: item diffing, reservations for increases, not found
- ConfirmSale / CancelSale: replay, double cancel
- Concurrency: parallel creates, conflicting updates, exhausted retries
- Error reporting: business failures vs. generic internal errors
- GetSale / ListSales queries
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from salesledger import (
    CancelSale,
    ConcurrencyConflictError,
    ConfirmSale,
    CreateSale,
    ExponentialBackoffRetryStrategy,
    GetSale,
    InMemoryCustomerDirectory,
    InMemoryIdempotencyRepository,
    InMemoryOutboxRepository,
    InMemorySaleRepository,
    InMemorySequenceAllocator,
    InMemoryStockReservation,
    ListSales,
    Sale,
    SaleCommandHandler,
    SaleItemInput,
    SaleQuery,
    SaleQueryHandler,
    SaleStatus,
    UpdateSale,
)
from salesledger.handlers import CONCURRENCY_ERROR_MESSAGE, INTERNAL_ERROR_MESSAGE
from salesledger.repositories.sequence import SequenceCounter


class RacingAllocator(InMemorySequenceAllocator):
    def __init__(self, racers: int) -> None:
        super().__init__(enable_tracing=False)
        self._barrier = asyncio.Barrier(racers)
        self._racers = racers
        self._arrived = 0

    async def _read(self, partition_id: UUID) -> SequenceCounter | None:
        counter = await super()._read(partition_id)
        if self._arrived < self._racers:
            self._arrived += 1
            await self._barrier.wait()
        return counter


class ExplodingDirectory:
    async def customer_exists(self, customer_id: UUID) -> bool:
        raise ConnectionError("crm unreachable")


class ConflictingSaleRepository(InMemorySaleRepository):
    """Every update loses the version race."""

    def __init__(self) -> None:
        super().__init__(enable_tracing=False)
        self.update_calls = 0

    async def update(self, sale: Sale) -> None:
        self.update_calls += 1
        raise ConcurrencyConflictError("sale", sale.id, expected_version=sale.version)


class LateIdempotency(InMemoryIdempotencyRepository):
    """Misses the record on the replay check, as if the winner saved it just after."""

    def __init__(self) -> None:
        super().__init__(enable_tracing=False)
        self.lookups = 0

    async def get_aggregate_id(self, request_id: str) -> UUID | None:
        self.lookups += 1
        if self.lookups == 1:
            return None
        return await super().get_aggregate_id(request_id)


class BrokenSaleRepository(InMemorySaleRepository):
    async def add(self, sale: Sale) -> int:
        raise RuntimeError("disk full at /var/lib/postgres")


def item(product_id: UUID, quantity: int, price: str = "10.00") -> SaleItemInput:
    return SaleItemInput(product_id=product_id, quantity=quantity, unit_price=Decimal(price))


@pytest.fixture
def handler(
    sale_repo: InMemorySaleRepository,
    idempotency_repo: InMemoryIdempotencyRepository,
    customers: InMemoryCustomerDirectory,
    stock: InMemoryStockReservation,
    retry_strategy: ExponentialBackoffRetryStrategy,
) -> SaleCommandHandler:
    return SaleCommandHandler(
        sale_repo,
        idempotency_repo,
        customers,
        stock,
        retry_strategy=retry_strategy,
        enable_tracing=False,
    )


@pytest.fixture
def queries(sale_repo: InMemorySaleRepository) -> SaleQueryHandler:
    return SaleQueryHandler(sale_repo, enable_tracing=False)


def create_command(
    customer_id: UUID, partition_id: UUID, *items: SaleItemInput, request_id: str = "req-create"
) -> CreateSale:
    return CreateSale(
        request_id=request_id,
        customer_id=customer_id,
        partition_id=partition_id,
        items=list(items),
    )


class TestCreateSale:
    async def test_creates_numbered_sale(
        self,
        handler: SaleCommandHandler,
        outbox_repo: InMemoryOutboxRepository,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 4))
        )

        assert result.is_success
        summary = result.value
        assert summary is not None
        assert summary.number == 1
        assert summary.status is SaleStatus.ACTIVE
        assert summary.total == Decimal("36.00")
        assert summary.items[0].discount == Decimal("0.10")
        types = [r.event_type for r in await outbox_repo.all_records()]
        assert types == ["SaleModified", "SaleCreated"]

    async def test_replay_returns_same_sale(
        self,
        handler: SaleCommandHandler,
        sale_repo: InMemorySaleRepository,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        command = create_command(customer_id, partition_id, item(product_id, 2))

        first = await handler.create_sale(command)
        second = await handler.create_sale(command)

        assert first.value == second.value
        page = await sale_repo.list(SaleQuery())
        assert page.total_count == 1

    async def test_items_are_consolidated(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID, product_id: UUID
    ) -> None:
        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 3), item(product_id, 1))
        )

        assert result.value is not None
        (line,) = result.value.items
        assert line.quantity == 4
        assert line.discount == Decimal("0.10")

    async def test_empty_items_rejected(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID
    ) -> None:
        result = await handler.create_sale(create_command(customer_id, partition_id))

        assert result.is_failure
        assert result.error == "a sale must have at least one item"

    async def test_too_many_units_rejected(
        self,
        handler: SaleCommandHandler,
        sale_repo: InMemorySaleRepository,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 15), item(product_id, 6))
        )

        assert result.is_failure
        assert "20" in (result.error or "")
        assert await sale_repo.allocator.current(partition_id) is None

    async def test_nil_customer_rejected(
        self, handler: SaleCommandHandler, partition_id: UUID, product_id: UUID
    ) -> None:
        result = await handler.create_sale(
            create_command(UUID(int=0), partition_id, item(product_id, 1))
        )

        assert result.is_failure
        assert "customer" in (result.error or "")

    async def test_unknown_customer_awaits_validation(
        self,
        sale_repo: InMemorySaleRepository,
        idempotency_repo: InMemoryIdempotencyRepository,
        stock: InMemoryStockReservation,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        handler = SaleCommandHandler(
            sale_repo, idempotency_repo, InMemoryCustomerDirectory(set()), stock,
            enable_tracing=False,
        )

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )

        assert result.value is not None
        assert result.value.status is SaleStatus.PENDING_VALIDATION

    async def test_directory_failure_awaits_validation(
        self,
        sale_repo: InMemorySaleRepository,
        idempotency_repo: InMemoryIdempotencyRepository,
        stock: InMemoryStockReservation,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        handler = SaleCommandHandler(
            sale_repo, idempotency_repo, ExplodingDirectory(), stock, enable_tracing=False
        )

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )

        assert result.is_success
        assert result.value is not None
        assert result.value.status is SaleStatus.PENDING_VALIDATION

    async def test_insufficient_stock_releases_earlier_reservations(
        self,
        sale_repo: InMemorySaleRepository,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        plenty, scarce = uuid4(), uuid4()
        stock = InMemoryStockReservation({plenty: 100, scarce: 1})
        handler = SaleCommandHandler(
            sale_repo, idempotency_repo, customers, stock, enable_tracing=False
        )

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(plenty, 5), item(scarce, 2))
        )

        assert result.is_failure
        assert result.error == f"insufficient stock for product {scarce}"
        assert stock.available(plenty) == 100
        assert stock.available(scarce) == 1
        assert not await idempotency_repo.exists("req-create")

    async def test_persist_failure_is_generic_and_releases_stock(
        self,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        stock = InMemoryStockReservation({product_id: 10})
        handler = SaleCommandHandler(
            BrokenSaleRepository(enable_tracing=False),
            idempotency_repo,
            customers,
            stock,
            enable_tracing=False,
        )

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 3))
        )

        assert result.is_failure
        assert result.error == INTERNAL_ERROR_MESSAGE
        assert "disk" not in (result.error or "")
        assert stock.available(product_id) == 10

    async def test_release_failure_does_not_mask_result(
        self,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        stock = AsyncMock()
        stock.reserve.return_value = True
        stock.release.side_effect = ConnectionError("inventory unreachable")
        handler = SaleCommandHandler(
            BrokenSaleRepository(enable_tracing=False),
            idempotency_repo,
            customers,
            stock,
            enable_tracing=False,
        )

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 3))
        )

        assert result.error == INTERNAL_ERROR_MESSAGE
        stock.reserve.assert_awaited_once_with(product_id, 3)
        stock.release.assert_awaited_once_with(product_id, 3)


class TestConcurrentCreates:
    async def test_parallel_creates_get_distinct_numbers(
        self,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        stock: InMemoryStockReservation,
        customer_id: UUID,
        partition_id: UUID,
        sleep_recorder: Any,
    ) -> None:
        strategy = ExponentialBackoffRetryStrategy(sleep=sleep_recorder)
        repo = InMemorySaleRepository(
            allocator=RacingAllocator(racers=2), retry_strategy=strategy, enable_tracing=False
        )
        handler = SaleCommandHandler(repo, idempotency_repo, customers, stock, enable_tracing=False)

        results = await asyncio.gather(
            handler.create_sale(
                create_command(customer_id, partition_id, item(uuid4(), 1), request_id="a")
            ),
            handler.create_sale(
                create_command(customer_id, partition_id, item(uuid4(), 1), request_id="b")
            ),
        )

        numbers = sorted(r.value.number for r in results if r.value is not None)
        assert numbers == [1, 2]
        assert strategy.stats.failures == 1

    async def test_many_parallel_creates(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID
    ) -> None:
        results = await asyncio.gather(
            *(
                handler.create_sale(
                    create_command(
                        customer_id, partition_id, item(uuid4(), 1), request_id=f"req-{i}"
                    )
                )
                for i in range(10)
            )
        )

        assert sorted(r.value.number for r in results if r.value) == list(range(1, 11))

    async def test_duplicate_request_race_keeps_one_sale(
        self,
        sale_repo: InMemorySaleRepository,
        customers: InMemoryCustomerDirectory,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        """The loser of a same-request race is cancelled and sees the winner's sale."""
        stock = InMemoryStockReservation({product_id: 10})
        winner = Sale.create(customer_id, partition_id)
        winner.add_item(product_id, 2, Decimal("10"))
        await stock.reserve(product_id, 2)
        await sale_repo.add(winner)

        late = LateIdempotency()
        await late.save("req-dup", "CreateSale", winner.id)
        handler = SaleCommandHandler(sale_repo, late, customers, stock, enable_tracing=False)

        result = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 2), request_id="req-dup")
        )

        assert result.value is not None
        assert result.value.id == winner.id
        page = await sale_repo.list(SaleQuery())
        statuses = sorted(s.status.value for s in page.items)
        assert statuses == ["active", "cancelled"]


class TestUpdateSale:
    async def _create(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID,
        *items: SaleItemInput,
    ) -> UUID:
        result = await handler.create_sale(create_command(customer_id, partition_id, *items))
        assert result.value is not None
        return result.value.id

    async def test_diff_adds_adjusts_and_removes(
        self,
        handler: SaleCommandHandler,
        outbox_repo: InMemoryOutboxRepository,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        keep, grow, shrink, drop, new = (uuid4() for _ in range(5))
        sale_id = await self._create(
            handler, customer_id, partition_id,
            item(keep, 2), item(grow, 3), item(shrink, 10), item(drop, 1),
        )
        await outbox_repo.clear()

        result = await handler.update_sale(
            UpdateSale(
                request_id="req-update",
                sale_id=sale_id,
                items=[item(keep, 2), item(grow, 4), item(shrink, 3), item(new, 1)],
            )
        )

        assert result.value is not None
        quantities = {line.product_id: line.quantity for line in result.value.items}
        assert quantities == {keep: 2, grow: 4, shrink: 3, new: 1}
        discounts = {line.product_id: line.discount for line in result.value.items}
        assert discounts[grow] == Decimal("0.10")
        assert discounts[shrink] == Decimal("0.00")
        types = [r.event_type for r in await outbox_repo.all_records()]
        assert types == ["ItemCancelled", "SaleModified", "SaleModified", "SaleModified"]

    async def test_repeated_product_is_summed(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID
    ) -> None:
        product = uuid4()
        sale_id = await self._create(handler, customer_id, partition_id, item(product, 2))

        result = await handler.update_sale(
            UpdateSale(
                request_id="req-update",
                sale_id=sale_id,
                items=[item(product, 3), item(product, 4, "12.00")],
            )
        )

        assert result.value is not None
        (line,) = result.value.items
        assert line.quantity == 7
        assert line.unit_price == Decimal("12.00")
        assert line.discount == Decimal("0.10")

    async def test_repeated_product_over_limit_is_rejected(
        self,
        handler: SaleCommandHandler,
        queries: SaleQueryHandler,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        product = uuid4()
        sale_id = await self._create(handler, customer_id, partition_id, item(product, 2))

        result = await handler.update_sale(
            UpdateSale(
                request_id="req-update",
                sale_id=sale_id,
                items=[item(product, 15), item(product, 6)],
            )
        )

        assert result.is_failure
        assert "20" in (result.error or "")
        stored = await queries.get_sale(GetSale(sale_id=sale_id))
        assert stored.value is not None
        assert stored.value.items[0].quantity == 2

    async def test_increase_reserves_only_the_difference(
        self,
        sale_repo: InMemorySaleRepository,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        stock = InMemoryStockReservation({product_id: 5})
        handler = SaleCommandHandler(
            sale_repo, idempotency_repo, customers, stock, enable_tracing=False
        )
        sale_id = await self._create(handler, customer_id, partition_id, item(product_id, 3))

        ok = await handler.update_sale(
            UpdateSale(request_id="u1", sale_id=sale_id, items=[item(product_id, 5)])
        )
        refused = await handler.update_sale(
            UpdateSale(request_id="u2", sale_id=sale_id, items=[item(product_id, 6)])
        )

        assert ok.is_success
        assert stock.available(product_id) == 0
        assert refused.error == f"insufficient stock for product {product_id}"
        sale = await sale_repo.get(sale_id)
        assert sale is not None
        assert sale.quantity_of(product_id) == 5

    async def test_replay_returns_current_state(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID, product_id: UUID
    ) -> None:
        sale_id = await self._create(handler, customer_id, partition_id, item(product_id, 1))
        command = UpdateSale(request_id="u1", sale_id=sale_id, items=[item(product_id, 2)])

        await handler.update_sale(command)
        replay = await handler.update_sale(command)

        assert replay.value is not None
        assert replay.value.items[0].quantity == 2

    async def test_not_found(self, handler: SaleCommandHandler, product_id: UUID) -> None:
        missing = uuid4()

        result = await handler.update_sale(
            UpdateSale(request_id="u1", sale_id=missing, items=[item(product_id, 1)])
        )

        assert result.error == f"Sale {missing} not found"

    async def test_cancelled_sale_cannot_change(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID, product_id: UUID
    ) -> None:
        sale_id = await self._create(handler, customer_id, partition_id, item(product_id, 1))
        await handler.cancel_sale(CancelSale(request_id="c1", sale_id=sale_id))

        result = await handler.update_sale(
            UpdateSale(request_id="u1", sale_id=sale_id, items=[item(product_id, 2)])
        )

        assert result.is_failure
        assert "cancelled" in (result.error or "")

    async def test_exhausted_conflicts_reported(
        self,
        idempotency_repo: InMemoryIdempotencyRepository,
        customers: InMemoryCustomerDirectory,
        stock: InMemoryStockReservation,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
        sleep_recorder: Any,
    ) -> None:
        repo = ConflictingSaleRepository()
        sale = Sale.create(customer_id, partition_id)
        sale.add_item(product_id, 1, Decimal("1"))
        await repo.add(sale)
        handler = SaleCommandHandler(
            repo,
            idempotency_repo,
            customers,
            stock,
            retry_strategy=ExponentialBackoffRetryStrategy(sleep=sleep_recorder),
            enable_tracing=False,
        )

        result = await handler.update_sale(
            UpdateSale(request_id="u1", sale_id=sale.id, items=[item(product_id, 2)])
        )

        assert result.error == CONCURRENCY_ERROR_MESSAGE
        assert repo.update_calls == 6
        assert not await idempotency_repo.exists("u1")


class TestConfirmAndCancel:
    async def test_cancel_then_replay(
        self,
        handler: SaleCommandHandler,
        sale_repo: InMemorySaleRepository,
        outbox_repo: InMemoryOutboxRepository,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )
        assert created.value is not None
        command = CancelSale(request_id="c1", sale_id=created.value.id, reason="wrong branch")

        first = await handler.cancel_sale(command)
        replay = await handler.cancel_sale(command)

        assert first.is_success
        assert replay.is_success
        records = await outbox_repo.all_records()
        assert [r.event_type for r in records].count("SaleCancelled") == 1
        sale = await sale_repo.get(created.value.id)
        assert sale is not None
        assert sale.status is SaleStatus.CANCELLED

    async def test_double_cancel_with_new_request_fails(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID, product_id: UUID
    ) -> None:
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )
        assert created.value is not None

        await handler.cancel_sale(CancelSale(request_id="c1", sale_id=created.value.id))
        second = await handler.cancel_sale(CancelSale(request_id="c2", sale_id=created.value.id))

        assert second.error == "sale is already cancelled"

    async def test_cancel_unknown_sale(self, handler: SaleCommandHandler) -> None:
        missing = uuid4()

        result = await handler.cancel_sale(CancelSale(request_id="c1", sale_id=missing))

        assert result.error == f"Sale {missing} not found"

    async def test_confirm_pending_sale(
        self,
        sale_repo: InMemorySaleRepository,
        idempotency_repo: InMemoryIdempotencyRepository,
        stock: InMemoryStockReservation,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        handler = SaleCommandHandler(
            sale_repo, idempotency_repo, InMemoryCustomerDirectory(set()), stock,
            enable_tracing=False,
        )
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )
        assert created.value is not None

        result = await handler.confirm_sale(ConfirmSale(request_id="k1", sale_id=created.value.id))

        assert result.is_success
        sale = await sale_repo.get(created.value.id)
        assert sale is not None
        assert sale.status is SaleStatus.ACTIVE
        assert sale.version == 2

    async def test_confirm_active_sale_is_noop(
        self,
        handler: SaleCommandHandler,
        sale_repo: InMemorySaleRepository,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )
        assert created.value is not None

        result = await handler.confirm_sale(ConfirmSale(request_id="k1", sale_id=created.value.id))

        assert result.is_success
        sale = await sale_repo.get(created.value.id)
        assert sale is not None
        assert sale.version == 1

    async def test_confirm_cancelled_sale_fails(
        self, handler: SaleCommandHandler, customer_id: UUID, partition_id: UUID, product_id: UUID
    ) -> None:
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 1))
        )
        assert created.value is not None
        await handler.cancel_sale(CancelSale(request_id="c1", sale_id=created.value.id))

        result = await handler.confirm_sale(ConfirmSale(request_id="k1", sale_id=created.value.id))

        assert result.is_failure


class TestCommandValidation:
    def test_request_id_required(self, customer_id: UUID, partition_id: UUID) -> None:
        with pytest.raises(ValidationError):
            CreateSale(request_id="", customer_id=customer_id, partition_id=partition_id)

    def test_list_page_size_bounded(self) -> None:
        with pytest.raises(ValidationError):
            ListSales(page_size=101)


class TestQueries:
    async def test_get_sale(
        self,
        handler: SaleCommandHandler,
        queries: SaleQueryHandler,
        customer_id: UUID,
        partition_id: UUID,
        product_id: UUID,
    ) -> None:
        created = await handler.create_sale(
            create_command(customer_id, partition_id, item(product_id, 4))
        )
        assert created.value is not None

        result = await queries.get_sale(GetSale(sale_id=created.value.id))

        assert result.value == created.value

    async def test_get_missing_sale(self, queries: SaleQueryHandler) -> None:
        missing = uuid4()

        result = await queries.get_sale(GetSale(sale_id=missing))

        assert result.error == f"Sale {missing} not found"

    async def test_list_sales(
        self,
        handler: SaleCommandHandler,
        queries: SaleQueryHandler,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        for i in range(3):
            await handler.create_sale(
                create_command(customer_id, partition_id, item(uuid4(), 1), request_id=f"r{i}")
            )
        await handler.create_sale(
            create_command(uuid4(), partition_id, item(uuid4(), 1), request_id="other")
        )

        page = await queries.list_sales(ListSales(customer_id=customer_id, page_size=2))

        assert page.total_count == 3
        assert len(page.items) == 2
        assert all(s.customer_id == customer_id for s in page.items)
