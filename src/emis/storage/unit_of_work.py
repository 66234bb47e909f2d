"""Unit of work: the commit boundary of one business operation.

``commit()`` runs the following steps in this order:

1. Read the domain-event ledger of every aggregate touched in the
   operation. Aggregates are read in the order they were touched, and
   each aggregate's events come out in append order.
2. Translate every drained event that has an external contract into an
   integration event and stage it as an outbox row.
3. Persist the aggregate changes and the outbox rows in one transaction.
4. After the transaction is durable, dispatch the drained events to the
   in-process domain-event handlers.

Step 2 and step 4 never fail the operation. A translation error drops
only that notification, and a dispatch error is logged and counted. If
step 3 fails, nothing is published and nothing is dispatched, and the
exception reaches the caller. The ledgers are cleared only once step 3
succeeds, so the same unit of work can commit again.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from emis.core.errors import EmisError
from emis.domain.aggregate import AggregateRoot
from emis.domain.dispatcher import IDomainEventDispatcher
from emis.domain.events import DomainEvent
from emis.integration.translator import Translator
from emis.observability.metrics import TRANSLATION_FAILURES
from emis.outbox.store import OutboxMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitResult:
    events: tuple[DomainEvent, ...] = ()
    outbox: tuple[OutboxMessage, ...] = ()
    translation_failures: tuple[str, ...] = ()


class AbstractUnitOfWork(ABC):
    """Template for the commit boundary; subclasses provide the transaction."""

    def __init__(
        self,
        *,
        translator: Translator | None = None,
        dispatcher: IDomainEventDispatcher | None = None,
    ) -> None:
        self._translator = translator
        self._dispatcher = dispatcher
        self._seen: list[AggregateRoot] = []

    async def __aenter__(self) -> Any:
        self._seen = []
        await self._begin()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            # Anything not committed by now is discarded.
            await self.rollback()
        finally:
            await self._close()

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track(self, aggregate: AggregateRoot) -> None:
        """Remember *aggregate* so its ledger is drained on commit."""
        if not any(seen is aggregate for seen in self._seen):
            self._seen.append(aggregate)

    @property
    def seen(self) -> list[AggregateRoot]:
        return list(self._seen)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def commit(self) -> CommitResult:
        events = [event for aggregate in self._seen for event in aggregate.peek_events()]
        outbox, failures = self._stage(events)

        await self._write(outbox)
        # Cleared only once the write is durable.
        for aggregate in self._seen:
            aggregate.clear_events()

        if self._dispatcher is not None and events:
            await self._dispatcher.dispatch(events)

        logger.debug(
            "Committed %d domain event(s), staged %d outbox row(s)",
            len(events),
            len(outbox),
        )
        return CommitResult(
            events=tuple(events),
            outbox=tuple(outbox),
            translation_failures=tuple(failures),
        )

    def _stage(self, events: Sequence[DomainEvent]) -> tuple[list[OutboxMessage], list[str]]:
        outbox: list[OutboxMessage] = []
        failures: list[str] = []
        if self._translator is None:
            return outbox, failures

        for event in events:
            try:
                integration_event = self._translator.translate(event)
                if integration_event is None:
                    continue
                outbox.append(OutboxMessage.from_event(integration_event))
            except (EmisError, ValueError, TypeError) as exc:
                failures.append(event.event_id)
                TRANSLATION_FAILURES.labels(event_type=event.event_type).inc()
                logger.error(
                    "Dropping notification for %s %s (tenant %s): %s",
                    event.event_type,
                    event.event_id,
                    event.tenant_id,
                    exc,
                )
        return outbox, failures

    # ------------------------------------------------------------------
    # Transaction hooks
    # ------------------------------------------------------------------

    async def _begin(self) -> None:
        """Open the underlying transaction."""

    async def _close(self) -> None:
        """Release the underlying transaction resources."""

    @abstractmethod
    async def _write(self, outbox: Sequence[OutboxMessage]) -> None:
        """Durably persist tracked changes together with *outbox* rows."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard every change not yet committed."""
