"""Integration event consumer: one worker loop per topic partition.

Delivery is at-least-once:

* Messages of one partition are processed strictly in arrival order.
* A message is acknowledged only after every handler bound to its type
  has completed.
* A handler failure that is classified as retryable leaves the message
  unacknowledged.  The worker backs off and refetches, and the broker
  hands the same message back first.
* A message that is dead-lettered is written to the dead-letter store
  first and acknowledged after that, so it no longer blocks the partition.

Shutdown stops fetching and sets the cancellation signal handed to
handlers.  In-flight handlers then get ``shutdown_grace_seconds`` to
finish before their tasks are cancelled.  Unfinished work is never
acknowledged.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from emis.bus.broker import BrokerMessage, IBroker
from emis.core.config import ConsumerConfig
from emis.core.enums import DeadLetterReason, Disposition, MessageState
from emis.observability.metrics import DEAD_LETTERS, MESSAGES_CONSUMED

from .dead_letter import DeadLetter, IDeadLetterStore, InMemoryDeadLetterStore
from .idempotency import IIdempotencyStore
from .retry import MessageLifecycle, backoff_delay
from .router import MessageRouter, SubscriptionTable

logger = logging.getLogger(__name__)


@dataclass
class ConsumerStats:
    """Counters shared by all workers of one consumer."""

    error_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    dead_letters: list[DeadLetter] = field(default_factory=list)
    messages_processed: int = 0


# ---------------------------------------------------------------------------
# Partition worker
# ---------------------------------------------------------------------------

class PartitionWorker:
    """Consumes one ``(topic, partition)`` for one consumer group."""

    def __init__(
        self,
        *,
        broker: IBroker,
        router: MessageRouter,
        dead_letters: IDeadLetterStore,
        group: str,
        topic: str,
        partition: int,
        config: ConsumerConfig,
        stopping: asyncio.Event,
        cancel: asyncio.Event,
        stats: ConsumerStats,
        batch_size: int = 10,
        block_ms: int = 1000,
    ) -> None:
        self._broker = broker
        self._router = router
        self._dead_letters = dead_letters
        self._group = group
        self.topic = topic
        self.partition = partition
        self._config = config
        self._stopping = stopping
        self._cancel = cancel
        self._stats = stats
        self._batch_size = batch_size
        self._block_ms = block_ms

        # Only the partition head can be awaiting redelivery.
        self._head: tuple[str, MessageLifecycle, set[str]] | None = None
        self._retry_delay: float = 0.0
        self._error_key = f"{topic}/{group}"

    @property
    def name(self) -> str:
        return f"{self.topic}[{self.partition}]"

    @property
    def head(self) -> MessageLifecycle | None:
        return self._head[1] if self._head else None

    async def run(self) -> None:
        """Worker loop: fetch, process in order, back off on retry."""
        logger.info("Partition worker %s started for %s", self.name, self._group)
        while not self._stopping.is_set():
            try:
                await self.poll_once(block_ms=self._block_ms)
            except Exception:
                logger.exception("Consumer loop error for %s/%s", self.name, self._group)
                self._stats.error_counts[self._error_key] += 1
                self._retry_delay = max(self._retry_delay, 1.0)

            if self._retry_delay > 0:
                delay, self._retry_delay = self._retry_delay, 0.0
                await self._sleep(delay)
        logger.info("Partition worker %s stopped", self.name)

    async def poll_once(self, block_ms: int = 0) -> int:
        """Fetch one batch and process it; return messages resolved.

        Processing stops at the first message left for redelivery, since
        nothing behind it on this partition may overtake it.
        """
        messages = await self._broker.fetch(
            self.topic,
            self.partition,
            self._group,
            max_messages=self._batch_size,
            block_ms=block_ms,
        )
        resolved = 0
        for message in messages:
            if self._stopping.is_set():
                break
            if not await self._process(message):
                break
            resolved += 1
        return resolved

    async def _process(self, message: BrokerMessage) -> bool:
        lifecycle, completed = self._track(message)
        lifecycle.transition(MessageState.PROCESSING)
        try:
            return await self._settle(message, lifecycle, completed)
        except Exception:
            # Typically a broker ack that failed; the head stays for redelivery.
            logger.exception(
                "Processing %s@%s failed; leaving it unacknowledged",
                self.name,
                message.offset,
            )
            self._stats.error_counts[self._error_key] += 1
            lifecycle.transition(MessageState.REDELIVERY_PENDING)
            self._retry_delay = self._backoff(lifecycle.attempts)
            return False

    async def _settle(
        self,
        message: BrokerMessage,
        lifecycle: MessageLifecycle,
        completed: set[str],
    ) -> bool:
        result = await self._router.route(
            message,
            attempt=lifecycle.attempts,
            completed=completed,
            cancel=self._cancel,
        )
        completed.update(result.completed)

        if result.disposition == Disposition.ACK:
            await self._broker.ack(self._group, message)
            lifecycle.transition(MessageState.ACKNOWLEDGED)
            self._resolved(message, "acked")
            self._stats.messages_processed += 1
            return True

        self._stats.error_counts[self._error_key] += 1

        if result.disposition == Disposition.DEAD_LETTER and not self._stopping.is_set():
            reason = result.reason or DeadLetterReason.RETRIES_EXHAUSTED
            event = result.event
            letter = DeadLetter.from_message(
                message,
                self._group,
                reason=reason,
                error=result.error_summary,
                attempts=lifecycle.attempts,
                event_type=type(event).__name__ if event is not None else None,
                event_id=event.event_id if event is not None else None,
                tenant_id=event.tenant_id if event is not None else None,
                handler=result.failed_handler,
            )
            try:
                await self._dead_letters.put(letter)
            except Exception:
                logger.exception(
                    "Dead-letter write failed for %s@%s; leaving it unacknowledged",
                    self.name,
                    message.offset,
                )
                lifecycle.transition(MessageState.REDELIVERY_PENDING)
                self._retry_delay = self._backoff(lifecycle.attempts)
                return False

            await self._broker.ack(self._group, message)
            lifecycle.transition(MessageState.DEAD_LETTERED)
            self._stats.dead_letters.append(letter)
            DEAD_LETTERS.labels(topic=self.topic, reason=reason.value).inc()
            logger.error(
                "Dead-lettered %s@%s (%s after %d attempt(s)): %s",
                self.name,
                message.offset,
                reason.value,
                lifecycle.attempts,
                letter.error,
            )
            self._resolved(message, "dead_lettered")
            return True

        # Retry, or any non-success while shutting down.
        lifecycle.transition(MessageState.REDELIVERY_PENDING)
        self._retry_delay = self._backoff(lifecycle.attempts)
        MESSAGES_CONSUMED.labels(topic=self.topic, group=self._group, outcome="redelivery").inc()
        return False

    def _track(self, message: BrokerMessage) -> tuple[MessageLifecycle, set[str]]:
        if self._head is not None and self._head[0] == message.offset:
            return self._head[1], self._head[2]
        lifecycle = MessageLifecycle(message_key=f"{self.name}@{message.offset}")
        completed: set[str] = set()
        self._head = (message.offset, lifecycle, completed)
        return lifecycle, completed

    def _resolved(self, message: BrokerMessage, outcome: str) -> None:
        self._head = None
        MESSAGES_CONSUMED.labels(topic=self.topic, group=self._group, outcome=outcome).inc()

    def _backoff(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self._config.backoff_base_seconds,
            self._config.backoff_max_seconds,
        )

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when shutdown begins."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class IntegrationEventConsumer:
    """Runs one :class:`PartitionWorker` per partition of every subscribed topic."""

    def __init__(
        self,
        broker: IBroker,
        subscriptions: SubscriptionTable,
        *,
        config: ConsumerConfig | None = None,
        dead_letters: IDeadLetterStore | None = None,
        idempotency: IIdempotencyStore | None = None,
        batch_size: int = 10,
        block_ms: int = 1000,
    ) -> None:
        self._broker = broker
        self._subscriptions = subscriptions
        self._config = config or ConsumerConfig()
        self._dead_letter_store = dead_letters or InMemoryDeadLetterStore()
        self._router = MessageRouter(
            subscriptions,
            handler_timeout=self._config.handler_timeout_seconds,
            idempotency=idempotency,
        )
        self._batch_size = batch_size
        self._block_ms = block_ms

        self._stopping = asyncio.Event()
        self._cancel = asyncio.Event()
        self._stats = ConsumerStats()
        self._workers: list[PartitionWorker] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def group(self) -> str:
        return self._subscriptions.group

    @property
    def workers(self) -> list[PartitionWorker]:
        return list(self._workers)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_workers(self) -> None:
        if self._workers:
            return
        self._subscriptions.freeze()
        for topic in self._subscriptions.topics:
            for partition in range(self._broker.partition_count(topic)):
                self._workers.append(
                    PartitionWorker(
                        broker=self._broker,
                        router=self._router,
                        dead_letters=self._dead_letter_store,
                        group=self.group,
                        topic=topic,
                        partition=partition,
                        config=self._config,
                        stopping=self._stopping,
                        cancel=self._cancel,
                        stats=self._stats,
                        batch_size=self._batch_size,
                        block_ms=self._block_ms,
                    )
                )

    async def start(self) -> None:
        """Freeze subscriptions and spawn one task per partition."""
        if self._tasks:
            return
        self._stopping.clear()
        self._cancel.clear()
        self._build_workers()
        for worker in self._workers:
            # Fresh context: a worker must not inherit the caller's tenant.
            task = asyncio.create_task(
                worker.run(),
                name=f"consumer-{self.group}-{worker.name}",
                context=contextvars.Context(),
            )
            self._tasks.append(task)
        logger.info(
            "Consumer %s started %d partition worker(s) on %s",
            self.group,
            len(self._tasks),
            ", ".join(self._subscriptions.topics),
        )

    async def stop(self) -> None:
        """Stop fetching, let in-flight handlers finish, cancel stragglers."""
        if not self._tasks:
            return
        self._stopping.set()
        self._cancel.set()

        _done, pending = await asyncio.wait(
            self._tasks, timeout=self._config.shutdown_grace_seconds,
        )
        for task in pending:
            logger.warning("Cancelling %s after shutdown grace period", task.get_name())
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Consumer %s stopped", self.group)

    async def drain(self, max_rounds: int = 1000) -> int:
        """Process everything currently available without blocking.

        A partition whose head message is left for redelivery ends its
        pass; call again to retry it.  Returns messages resolved.
        """
        self._build_workers()
        total = 0
        for _ in range(max_rounds):
            resolved = 0
            for worker in self._workers:
                ctx = contextvars.Context()
                resolved += await asyncio.create_task(worker.poll_once(block_ms=0), context=ctx)
            total += resolved
            if resolved == 0:
                break
        return total

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-topic/group error counts."""
        return dict(self._stats.error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        """Dead letters written by this consumer (read-only snapshot)."""
        return list(self._stats.dead_letters)

    @property
    def dead_letter_store(self) -> IDeadLetterStore:
        return self._dead_letter_store

    @property
    def messages_processed(self) -> int:
        """Total messages successfully processed."""
        return self._stats.messages_processed

    def clear_dead_letters(self) -> list[DeadLetter]:
        """Drain the dead-letter snapshot and return all entries."""
        drained = self._stats.dead_letters[:]
        self._stats.dead_letters.clear()
        return drained
