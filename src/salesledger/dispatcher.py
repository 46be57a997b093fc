"""
Background delivery of outbox records.

The OutboxDispatcher polls pending outbox records, decodes each one through
the closed event registry and hands the event to every subscriber in turn.

Per record:

- Unknown event type or undecodable payload: marked failed at once. No
  amount of retrying can fix it.
- Every subscriber is invoked even when an earlier one raised. If none
  raised, the record is marked processed. Errors a subscriber handles
  itself never reach the dispatcher.
- A subscriber raised, or completing the record failed: the failure is
  counted and the record is polled again until its retry count reaches
  the cap, then it is marked failed.

The loop sleeps poll_interval between cycles and error_cooldown after a
cycle that raised. stop() is honoured between cycles, never mid-batch.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from salesledger.config import DispatcherConfig
from salesledger.events.registry import SALE_EVENT_REGISTRY, EventRegistry, UnknownEventTypeError
from salesledger.exceptions import SerializationError
from salesledger.observability import Tracer, create_tracer
from salesledger.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_EVENT_COUNT,
    ATTR_EVENT_TYPE,
    ATTR_OUTBOX_ID,
    ATTR_SALE_ID,
)
from salesledger.repositories.outbox import OutboxRecord, OutboxRepository, OutboxStatus
from salesledger.subscribers import EventSubscriber, SubscriberResult, invoke_subscriber

logger = logging.getLogger(__name__)


@dataclass
class DispatchStats:
    """Counters for one dispatch cycle (or, on the dispatcher, all cycles)."""

    fetched: int = 0
    processed: int = 0
    failed: int = 0
    retried: int = 0
    subscriber_errors: int = 0

    def add(self, other: "DispatchStats") -> None:
        self.fetched += other.fetched
        self.processed += other.processed
        self.failed += other.failed
        self.retried += other.retried
        self.subscriber_errors += other.subscriber_errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "failed": self.failed,
            "retried": self.retried,
            "subscriber_errors": self.subscriber_errors,
        }


class OutboxDispatcher:
    """
    Polls the outbox and delivers events to in-process subscribers.

    Example:
        >>> dispatcher = OutboxDispatcher(outbox, [CrmProjection(), inventory])
        >>> dispatcher.start()
        >>> ...
        >>> await dispatcher.stop()

        Or drive it manually (tests, cron-style jobs):

        >>> stats = await dispatcher.run_once()
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        subscribers: Sequence[EventSubscriber],
        registry: EventRegistry = SALE_EVENT_REGISTRY,
        config: DispatcherConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._outbox = outbox
        self._subscribers = list(subscribers)
        self._registry = registry
        self.config = config or DispatcherConfig()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stats = DispatchStats()

    @property
    def stats(self) -> DispatchStats:
        """Totals across every cycle run so far."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> DispatchStats:
        """
        Run a single poll-and-dispatch cycle.

        Returns:
            Counters for this cycle
        """
        stats = DispatchStats()
        with self._tracer.span(
            "salesledger.dispatcher.run_once",
            {ATTR_BATCH_SIZE: self.config.batch_size},
        ) as span:
            records = await self._outbox.get_pending(
                limit=self.config.batch_size,
                max_retries=self.config.max_retries,
            )
            stats.fetched = len(records)

            for record in records:
                await self._process(record, stats)

            if span:
                span.set_attribute(ATTR_EVENT_COUNT, stats.fetched)

        self._stats.add(stats)
        if stats.fetched:
            logger.info(
                "Dispatched %d outbox records: %d processed, %d failed, %d to retry",
                stats.fetched,
                stats.processed,
                stats.failed,
                stats.retried,
                extra=stats.to_dict(),
            )
        return stats

    async def _process(self, record: OutboxRecord, stats: DispatchStats) -> None:
        with self._tracer.span(
            "salesledger.dispatcher.process",
            {
                ATTR_OUTBOX_ID: str(record.id),
                ATTR_EVENT_TYPE: record.event_type,
                ATTR_SALE_ID: str(record.aggregate_id),
            },
        ):
            try:
                event = self._registry.decode(record.event_type, record.event_data)
            except UnknownEventTypeError:
                await self._fail(record, f"Unknown event type: {record.event_type}", stats)
                return
            except SerializationError as e:
                await self._fail(record, str(e), stats)
                return

            results: list[SubscriberResult] = []
            for subscriber in self._subscribers:
                results.append(await invoke_subscriber(subscriber, event, self._tracer))
            errors = [f"{r.subscriber}: {r.error}" for r in results if not r.success]
            stats.subscriber_errors += len(errors)
            if errors:
                await self._retry_later(record, "; ".join(errors), stats)
                return

            try:
                await self._outbox.mark_processed(record.id)
            except Exception as e:
                logger.error(
                    "Error completing outbox record %s: %s",
                    record.id,
                    e,
                    exc_info=True,
                    extra={"outbox_id": str(record.id), "event_type": record.event_type},
                )
                await self._retry_later(record, str(e), stats)
                return

            stats.processed += 1

    async def _retry_later(self, record: OutboxRecord, error: str, stats: DispatchStats) -> None:
        status = await self._outbox.record_failure(
            record.id, error, max_retries=self.config.max_retries
        )
        if status is OutboxStatus.FAILED:
            stats.failed += 1
        else:
            stats.retried += 1
        logger.warning(
            "Outbox record %s not delivered, now %s: %s",
            record.id,
            status.value,
            error,
            extra={
                "outbox_id": str(record.id),
                "event_type": record.event_type,
                "status": status.value,
            },
        )

    async def _fail(self, record: OutboxRecord, error: str, stats: DispatchStats) -> None:
        await self._outbox.mark_failed(record.id, error)
        stats.failed += 1
        logger.error(
            "Outbox record %s cannot be delivered: %s",
            record.id,
            error,
            extra={"outbox_id": str(record.id), "event_type": record.event_type},
        )

    async def run(self) -> None:
        """
        Poll until stop() is called.

        Never raises for cycle errors: they are logged and followed by the
        error cooldown.
        """
        logger.info(
            "Outbox dispatcher started",
            extra={
                "batch_size": self.config.batch_size,
                "poll_interval": self.config.poll_interval,
                "subscribers": [s.name for s in self._subscribers],
            },
        )
        while not self._stop_event.is_set():
            try:
                await self.run_once()
                delay = self.config.poll_interval
            except Exception as e:
                logger.error(
                    "Outbox dispatch cycle failed: %s",
                    e,
                    exc_info=True,
                    extra={"error_cooldown": self.config.error_cooldown},
                )
                delay = self.config.error_cooldown
            await self._sleep(delay)
        logger.info("Outbox dispatcher stopped", extra=self._stats.to_dict())

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def start(self) -> "asyncio.Task[None]":
        """Run the loop as a background task. Returns the running task."""
        if self.is_running:
            assert self._task is not None
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="salesledger-outbox-dispatcher")
        return self._task

    async def stop(self) -> None:
        """
        Ask the loop to exit and wait for the current cycle to finish.

        Waits at most shutdown_timeout seconds before cancelling the task.
        """
        self._stop_event.set()
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.shutdown_timeout)
        except TimeoutError:
            logger.warning(
                "Outbox dispatcher did not stop within %.1fs; cancelling",
                self.config.shutdown_timeout,
            )
            task.cancel()
        finally:
            self._task = None


__all__ = [
    "DispatchStats",
    "OutboxDispatcher",
]
