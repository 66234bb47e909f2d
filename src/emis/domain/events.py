"""Domain event base type.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).
2.  A domain event is visible only inside the service that raised it.  It
    crosses a service boundary only after a translator turns it into an
    integration event.
3.  Domain events are never persisted: they live in the owning
    aggregate's ledger until the unit of work drains them, and are
    discarded after dispatch.
4.  ``tenant_id`` always equals the raising aggregate's tenant.

Concrete events live next to the aggregates that raise them
(``emis.services.<service>.events``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from emis.core.ids import new_id as _uuid
from emis.core.ids import utc_now as _now


@dataclass(frozen=True)
class DomainEvent:
    """Immutable base for every domain event.

    Shared fields
    ~~~~~~~~~~~~~
    event_id        Unique identity (UUID4).
    occurred_at     UTC creation time.
    aggregate_id    Id of the aggregate whose transaction raised the event.
    tenant_id       Tenant of that aggregate.
    """

    event_id: str = field(default_factory=_uuid)
    occurred_at: datetime = field(default_factory=_now)
    aggregate_id: str = ""
    tenant_id: str = ""

    @property
    def event_type(self) -> str:
        return type(self).__name__
