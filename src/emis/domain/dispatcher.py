"""In-process dispatch of drained domain events.

The unit of work hands every drained event to :class:`DomainEventDispatcher`
*after* the state change is durable.  Dispatch is best-effort: a failing
handler is logged, counted, and recorded, but never raised back to the
command that triggered it, because that command has already succeeded.

Handlers are routed by exact event type and run in registration order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol, runtime_checkable

from emis.observability.metrics import DOMAIN_DISPATCH_FAILURES

from .events import DomainEvent

logger = logging.getLogger(__name__)

# Type alias for async domain event handlers.
DomainEventHandler = Callable[[DomainEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class IDomainEventDispatcher(Protocol):
    """Routes domain events to in-process handlers by type."""

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: DomainEventHandler,
    ) -> None:
        """Register *handler* for events of exactly *event_type*."""
        ...

    async def dispatch(self, events: Iterable[DomainEvent]) -> None:
        """Deliver *events* in order; never raises handler errors."""
        ...


# ---------------------------------------------------------------------------
# Implementation
# ---------------------------------------------------------------------------

class DomainEventDispatcher:
    """Deterministic, in-process domain event dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[
            type[DomainEvent], list[DomainEventHandler]
        ] = defaultdict(list)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._failures: list[tuple[DomainEvent, str]] = []
        self._dispatched: int = 0

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: DomainEventHandler,
    ) -> None:
        self._handlers[event_type].append(handler)

    async def dispatch(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            for handler in self._handlers.get(type(event), []):
                try:
                    await handler(event)
                    self._dispatched += 1
                except Exception as exc:
                    key = event.event_type
                    self._error_counts[key] += 1
                    self._failures.append((event, str(exc)))
                    DOMAIN_DISPATCH_FAILURES.labels(event_type=key).inc()
                    logger.exception(
                        "Domain event handler failed for %s %s",
                        key,
                        event.event_id,
                    )

    # -- Observability -----------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    @property
    def failures(self) -> list[tuple[DomainEvent, str]]:
        return list(self._failures)

    @property
    def dispatched(self) -> int:
        return self._dispatched
