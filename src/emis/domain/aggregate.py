"""Aggregate root with a private domain-event ledger.

An aggregate method that changes state appends a fact with
:meth:`AggregateRoot.record_event`.  The unit of work drains the ledger
with :meth:`AggregateRoot.pull_events` after the state change is durable.
Repositories call :meth:`AggregateRoot.clear_events` on every load so a
freshly loaded aggregate never carries facts from an earlier operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from emis.core.errors import TenantMismatchError
from emis.core.ids import new_id, utc_now

from .events import DomainEvent


@dataclass
class AggregateRoot:
    """Base class for every aggregate in every service.

    ``tenant_scoped`` is ``False`` only for platform-level aggregates
    (the tenant itself) that are loaded before any tenant is known.
    """

    tenant_scoped: ClassVar[bool] = True

    id: str = field(default_factory=new_id)
    tenant_id: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None
    _events: list[DomainEvent] = field(
        default_factory=list, init=False, repr=False, compare=False,
    )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def record_event(self, event: DomainEvent) -> None:
        """Append *event* to this aggregate's ledger."""
        if event.tenant_id != self.tenant_id:
            raise TenantMismatchError(
                f"{event.event_type} carries tenant {event.tenant_id!r}, "
                f"aggregate {self.id} belongs to {self.tenant_id!r}"
            )
        self._events.append(event)

    def pull_events(self) -> list[DomainEvent]:
        """Return all pending events in append order and clear the ledger."""
        drained = self._events[:]
        self._events.clear()
        return drained

    def peek_events(self) -> list[DomainEvent]:
        return list(self._events)

    def clear_events(self) -> None:
        self._events.clear()

    def touch(self) -> None:
        self.updated_at = utc_now()
