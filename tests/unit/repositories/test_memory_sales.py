"""
Unit tests for InMemorySaleRepository and the shared add/update flow.

Tests for:
- add(): number allocation, SaleCreated, outbox capture, event buffer
- Retry of number allocation conflicts, exactly-once SaleCreated
- Rollback of the aggregate when every attempt fails
- update(): version checks, outbox capture
- list(): filters, ordering and paging
- Post-commit publishing
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest

from salesledger import (
    ConcurrencyConflictError,
    ConcurrencyExhaustedError,
    DomainEvent,
    ExponentialBackoffRetryStrategy,
    InMemoryOutboxRepository,
    InMemorySaleRepository,
    InMemorySequenceAllocator,
    InvalidSaleError,
    Sale,
    SaleCreated,
    SaleNotFoundError,
    SaleQuery,
    SaleRepository,
    SaleStatus,
)
from salesledger.repositories.sequence import SequenceCounter


class ConflictingAllocator(InMemorySequenceAllocator):
    """Raises a conflict for the first `conflicts` allocations."""

    def __init__(self, conflicts: int) -> None:
        super().__init__(enable_tracing=False)
        self.remaining = conflicts
        self.calls = 0

    async def next_number(self, partition_id: UUID) -> int:
        self.calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise ConcurrencyConflictError("sale_sequence", partition_id, expected_version=0)
        return await super().next_number(partition_id)


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


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.published: list[DomainEvent] = []
        self.fail = fail

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.published.extend(events)


class FlakyOutbox(InMemoryOutboxRepository):
    """Raises on add_events while `down` is set."""

    def __init__(self) -> None:
        super().__init__(enable_tracing=False)
        self.down = True

    async def add_events(self, events: Sequence[DomainEvent]) -> list[UUID]:
        if self.down:
            raise ConnectionError("outbox unavailable")
        return await super().add_events(events)


def sale_with_item(customer_id: UUID, partition_id: UUID, quantity: int = 2) -> Sale:
    sale = Sale.create(customer_id, partition_id)
    sale.add_item(uuid4(), quantity, Decimal("10.00"))
    return sale


class TestAdd:
    async def test_implements_protocol(self, sale_repo: InMemorySaleRepository) -> None:
        assert isinstance(sale_repo, SaleRepository)

    async def test_assigns_number_and_persists(
        self, sale_repo: InMemorySaleRepository, customer_id: UUID, partition_id: UUID
    ) -> None:
        sale = sale_with_item(customer_id, partition_id)

        number = await sale_repo.add(sale)

        assert number == 1
        assert sale.number == 1
        assert sale.version == 1
        assert not sale.has_uncommitted_events
        loaded = await sale_repo.get(sale.id)
        assert loaded is not None
        assert loaded.number == 1
        assert loaded.items == sale.items
        assert loaded.total == Decimal("20.00")

    async def test_events_go_to_outbox_in_order(
        self,
        sale_repo: InMemorySaleRepository,
        outbox_repo: InMemoryOutboxRepository,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        sale = sale_with_item(customer_id, partition_id)

        await sale_repo.add(sale)

        records = await outbox_repo.all_records()
        assert [r.event_type for r in records] == ["SaleModified", "SaleCreated"]
        assert all(r.aggregate_id == sale.id for r in records)
        created = SaleCreated.from_json(records[1].event_data)
        assert created.sale_number == 1

    async def test_numbers_per_partition(
        self, sale_repo: InMemorySaleRepository, customer_id: UUID
    ) -> None:
        branch_a, branch_b = uuid4(), uuid4()

        numbers = [
            await sale_repo.add(sale_with_item(customer_id, branch_a)),
            await sale_repo.add(sale_with_item(customer_id, branch_a)),
            await sale_repo.add(sale_with_item(customer_id, branch_b)),
        ]

        assert numbers == [1, 2, 1]

    async def test_cannot_add_twice(
        self, sale_repo: InMemorySaleRepository, customer_id: UUID, partition_id: UUID
    ) -> None:
        sale = sale_with_item(customer_id, partition_id)
        await sale_repo.add(sale)

        with pytest.raises(InvalidSaleError):
            await sale_repo.add(sale)

    async def test_get_unknown(self, sale_repo: InMemorySaleRepository) -> None:
        assert await sale_repo.get(uuid4()) is None


class TestAddRetries:
    async def test_conflict_is_retried_with_single_sale_created(
        self, customer_id: UUID, partition_id: UUID, sleep_recorder: Any
    ) -> None:
        allocator = ConflictingAllocator(conflicts=2)
        outbox = InMemoryOutboxRepository(enable_tracing=False)
        repo = InMemorySaleRepository(
            outbox=outbox,
            allocator=allocator,
            retry_strategy=ExponentialBackoffRetryStrategy(sleep=sleep_recorder),
            enable_tracing=False,
        )
        sale = sale_with_item(customer_id, partition_id)

        assert await repo.add(sale) == 1

        assert allocator.calls == 3
        assert sleep_recorder.delays == pytest.approx([0.05, 0.1])
        records = await outbox.all_records()
        assert [r.event_type for r in records].count("SaleCreated") == 1

    async def test_exhaustion_restores_sale(
        self, customer_id: UUID, partition_id: UUID, sleep_recorder: Any
    ) -> None:
        outbox = InMemoryOutboxRepository(enable_tracing=False)
        repo = InMemorySaleRepository(
            outbox=outbox,
            allocator=ConflictingAllocator(conflicts=100),
            retry_strategy=ExponentialBackoffRetryStrategy(sleep=sleep_recorder),
            enable_tracing=False,
        )
        sale = sale_with_item(customer_id, partition_id)
        events_before = sale.uncommitted_events

        with pytest.raises(ConcurrencyExhaustedError) as exc_info:
            await repo.add(sale)

        assert exc_info.value.attempts == 6
        assert sleep_recorder.delays == pytest.approx([0.05, 0.1, 0.2, 0.4, 0.8])
        assert sale.number == 0
        assert sale.version == 0
        assert sale.uncommitted_events == events_before
        assert await repo.get(sale.id) is None
        assert await outbox.all_records() == []

    async def test_concurrent_adds_get_distinct_numbers(
        self, customer_id: UUID, partition_id: UUID, sleep_recorder: Any
    ) -> None:
        strategy = ExponentialBackoffRetryStrategy(sleep=sleep_recorder)
        repo = InMemorySaleRepository(
            allocator=RacingAllocator(racers=2), retry_strategy=strategy, enable_tracing=False
        )
        first = sale_with_item(customer_id, partition_id)
        second = sale_with_item(customer_id, partition_id)

        numbers = await asyncio.gather(repo.add(first), repo.add(second))

        assert sorted(numbers) == [1, 2]
        assert strategy.stats.failures == 1
        assert sleep_recorder.delays == pytest.approx([0.05])


class TestUpdate:
    async def test_update_bumps_version_and_captures_events(
        self,
        sale_repo: InMemorySaleRepository,
        outbox_repo: InMemoryOutboxRepository,
        customer_id: UUID,
        partition_id: UUID,
    ) -> None:
        sale = sale_with_item(customer_id, partition_id)
        await sale_repo.add(sale)
        await outbox_repo.clear()

        loaded = await sale_repo.get(sale.id)
        assert loaded is not None
        loaded.cancel("changed mind")
        await sale_repo.update(loaded)

        assert loaded.version == 2
        assert not loaded.has_uncommitted_events
        stored = await sale_repo.get(sale.id)
        assert stored is not None
        assert stored.status is SaleStatus.CANCELLED
        records = await outbox_repo.all_records()
        assert [r.event_type for r in records] == ["SaleCancelled"]

    async def test_stale_version_conflicts(
        self, sale_repo: InMemorySaleRepository, customer_id: UUID, partition_id: UUID
    ) -> None:
        sale = sale_with_item(customer_id, partition_id)
        await sale_repo.add(sale)
        first = await sale_repo.get(sale.id)
        second = await sale_repo.get(sale.id)
        assert first is not None and second is not None

        first.cancel()
        await sale_repo.update(first)
        second.mark_pending_validation()

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await sale_repo.update(second)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    async def test_missing_sale(
        self, sale_repo: InMemorySaleRepository, customer_id: UUID, partition_id: UUID
    ) -> None:
        ghost = Sale(uuid4(), customer_id, partition_id, number=5, version=1)

        with pytest.raises(SaleNotFoundError):
            await sale_repo.update(ghost)

    async def test_unpersisted_sale_rejected(
        self, sale_repo: InMemorySaleRepository, new_sale: Sale
    ) -> None:
        with pytest.raises(InvalidSaleError):
            await sale_repo.update(new_sale)



class TestOutboxWriteFailure:
    async def test_add_leaves_nothing_behind(
        self, customer_id: UUID, partition_id: UUID
    ) -> None:
        outbox = FlakyOutbox()
        repo = InMemorySaleRepository(outbox=outbox, enable_tracing=False)
        sale = sale_with_item(customer_id, partition_id)

        with pytest.raises(ConnectionError):
            await repo.add(sale)

        assert await repo.get(sale.id) is None
        assert sale.number == 0
        assert sale.has_uncommitted_events
        assert (await repo.list(SaleQuery())).total_count == 0

    async def test_add_can_be_retried(self, customer_id: UUID, partition_id: UUID) -> None:
        outbox = FlakyOutbox()
        repo = InMemorySaleRepository(outbox=outbox, enable_tracing=False)
        sale = sale_with_item(customer_id, partition_id)
        with pytest.raises(ConnectionError):
            await repo.add(sale)

        outbox.down = False
        await repo.add(sale)

        assert await repo.get(sale.id) is not None
        records = await outbox.all_records()
        assert [r.event_type for r in records] == ["SaleModified", "SaleCreated"]

    async def test_update_keeps_previous_snapshot(
        self, customer_id: UUID, partition_id: UUID
    ) -> None:
        outbox = FlakyOutbox()
        outbox.down = False
        repo = InMemorySaleRepository(outbox=outbox, enable_tracing=False)
        sale = sale_with_item(customer_id, partition_id)
        await repo.add(sale)
        await outbox.clear()
        loaded = await repo.get(sale.id)
        assert loaded is not None
        loaded.cancel()

        outbox.down = True
        with pytest.raises(ConnectionError):
            await repo.update(loaded)

        stored = await repo.get(sale.id)
        assert stored is not None
        assert stored.status is SaleStatus.ACTIVE
        assert stored.version == 1
        assert await outbox.all_records() == []

        outbox.down = False
        await repo.update(loaded)

        stored = await repo.get(sale.id)
        assert stored is not None
        assert stored.status is SaleStatus.CANCELLED
        assert stored.version == 2
        assert [r.event_type for r in await outbox.all_records()] == ["SaleCancelled"]

class TestPublish:
    async def test_committed_events_are_published(
        self, customer_id: UUID, partition_id: UUID
    ) -> None:
        publisher = RecordingPublisher()
        repo = InMemorySaleRepository(publisher=publisher, enable_tracing=False)
        sale = sale_with_item(customer_id, partition_id)

        await repo.add(sale)

        assert [e.event_type for e in publisher.published] == ["SaleModified", "SaleCreated"]

    async def test_publisher_failure_does_not_fail_add(
        self, customer_id: UUID, partition_id: UUID
    ) -> None:
        outbox = InMemoryOutboxRepository(enable_tracing=False)
        repo = InMemorySaleRepository(
            outbox=outbox, publisher=RecordingPublisher(fail=True), enable_tracing=False
        )
        sale = sale_with_item(customer_id, partition_id)

        assert await repo.add(sale) == 1
        assert len(await outbox.get_pending()) == 2


class TestList:
    async def _seed(self, repo: InMemorySaleRepository, count: int, **kwargs: Any) -> list[Sale]:
        sales = []
        base = datetime(2024, 1, 1, tzinfo=UTC)
        for i in range(count):
            sale = Sale(
                uuid4(),
                kwargs.get("customer_id", uuid4()),
                kwargs.get("partition_id", uuid4()),
                created_at=base + timedelta(days=i),
            )
            sale.add_item(uuid4(), 1, Decimal("5"))
            await repo.add(sale)
            sales.append(sale)
        return sales

    async def test_newest_first_with_paging(self, sale_repo: InMemorySaleRepository) -> None:
        sales = await self._seed(sale_repo, 5)

        page = await sale_repo.list(SaleQuery(page=1, page_size=2))

        assert page.total_count == 5
        assert page.total_pages == 3
        assert page.has_next
        assert [s.id for s in page.items] == [sales[4].id, sales[3].id]

        last = await sale_repo.list(SaleQuery(page=3, page_size=2))
        assert [s.id for s in last.items] == [sales[0].id]
        assert not last.has_next

    async def test_filters(self, sale_repo: InMemorySaleRepository, customer_id: UUID) -> None:
        mine = await self._seed(sale_repo, 2, customer_id=customer_id)
        await self._seed(sale_repo, 3)
        mine[0].cancel()
        await sale_repo.update(mine[0])

        by_customer = await sale_repo.list(SaleQuery(customer_id=customer_id))
        cancelled = await sale_repo.list(SaleQuery(status=SaleStatus.CANCELLED))

        assert by_customer.total_count == 2
        assert [s.id for s in cancelled.items] == [mine[0].id]

    async def test_date_range_is_inclusive(self, sale_repo: InMemorySaleRepository) -> None:
        sales = await self._seed(sale_repo, 4)

        page = await sale_repo.list(
            SaleQuery(date_from=sales[1].created_at, date_to=sales[2].created_at)
        )

        assert {s.id for s in page.items} == {sales[1].id, sales[2].id}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"page": 0},
            {"page_size": 0},
            {"page_size": 101},
            {
                "date_from": datetime(2024, 2, 1, tzinfo=UTC),
                "date_to": datetime(2024, 1, 1, tzinfo=UTC),
            },
        ],
    )
    def test_invalid_query(self, kwargs: dict[str, Any]) -> None:
        with pytest.raises(ValueError):
            SaleQuery(**kwargs)
