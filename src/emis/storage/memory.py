"""In-memory persistence: one database per service, tenant-scoped repositories.

``InMemoryDatabase`` stores deep copies of aggregates, so an aggregate
changed inside a unit of work is invisible to every other unit of work
until ``commit()`` applies the staged rows together with the outbox rows.

Repositories only see rows of the current tenant.  A lookup of another
tenant's aggregate returns ``None`` as if the row did not exist, and
adding an aggregate for another tenant raises
:class:`TenantMismatchError`.
"""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from typing import Generic, TypeVar

from emis.core.errors import NotFoundError, TenantMismatchError
from emis.domain.aggregate import AggregateRoot
from emis.domain.dispatcher import IDomainEventDispatcher
from emis.integration.translator import Translator
from emis.outbox.store import InMemoryOutboxStore, IOutboxStore, OutboxMessage
from emis.tenancy.context import current_tenant_id

from .unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=AggregateRoot)

# table name → id → aggregate (None marks a staged delete)
_Changes = dict[str, dict[str, AggregateRoot | None]]


def _table(model: type[AggregateRoot]) -> str:
    return model.__name__


def _detached(aggregate: A) -> A:
    clone = copy.deepcopy(aggregate)
    clone.clear_events()
    return clone


class InMemoryDatabase:
    """Committed state of one service: aggregate tables plus the outbox.

    *outbox* defaults to an in-process table; a deployment with PostgreSQL
    passes :class:`emis.storage.postgres.SqlOutboxStore` so rows survive
    restarts and can be relayed by a separate process.
    """

    def __init__(self, outbox: IOutboxStore | None = None) -> None:
        self._tables: dict[str, dict[str, AggregateRoot]] = defaultdict(dict)
        self.outbox: IOutboxStore = outbox if outbox is not None else InMemoryOutboxStore()
        self.commits = 0
        self.fail_next_commit: Exception | None = None

    async def apply(self, changes: _Changes, outbox: Sequence[OutboxMessage]) -> None:
        """Atomically apply staged rows and outbox rows."""
        if self.fail_next_commit is not None:
            exc, self.fail_next_commit = self.fail_next_commit, None
            raise exc

        for table, rows in changes.items():
            for aggregate_id, aggregate in rows.items():
                if aggregate is None:
                    self._tables[table].pop(aggregate_id, None)
                else:
                    self._tables[table][aggregate_id] = _detached(aggregate)
        await self.outbox.add_many(outbox)
        self.commits += 1

    def load(self, model: type[A], aggregate_id: str) -> A | None:
        row = self._tables[_table(model)].get(aggregate_id)
        return _detached(row) if row is not None else None  # type: ignore[return-value]

    def rows(self, model: type[A]) -> list[A]:
        return [_detached(r) for r in self._tables[_table(model)].values()]  # type: ignore[misc]

    def count(self, model: type[AggregateRoot], tenant_id: str | None = None) -> int:
        return sum(
            1
            for r in self._tables[_table(model)].values()
            if tenant_id is None or r.tenant_id == tenant_id
        )


class TenantScopedRepository(Generic[A]):
    """Repository over one aggregate type, filtered by the current tenant."""

    def __init__(self, uow: InMemoryUnitOfWork, model: type[A]) -> None:
        self._uow = uow
        self._model = model

    def _tenant(self) -> str | None:
        return current_tenant_id() if self._model.tenant_scoped else None

    def _visible(self, aggregate: AggregateRoot, tenant: str | None) -> bool:
        return tenant is None or aggregate.tenant_id == tenant

    async def add(self, aggregate: A) -> None:
        tenant = self._tenant()
        if not self._visible(aggregate, tenant):
            raise TenantMismatchError(
                f"Cannot add {self._model.__name__} of tenant {aggregate.tenant_id} "
                f"while operating for tenant {tenant}"
            )
        self._uow.stage(self._model, aggregate)

    async def get(self, aggregate_id: str) -> A | None:
        tenant = self._tenant()
        staged = self._uow.staged(self._model)
        if aggregate_id in staged:
            hit = staged[aggregate_id]
            return hit if hit is not None and self._visible(hit, tenant) else None  # type: ignore[return-value]

        loaded = self._uow.database.load(self._model, aggregate_id)
        if loaded is None or not self._visible(loaded, tenant):
            return None
        self._uow.stage(self._model, loaded)
        return loaded

    async def require(self, aggregate_id: str) -> A:
        found = await self.get(aggregate_id)
        if found is None:
            raise NotFoundError(f"{self._model.__name__} {aggregate_id} not found")
        return found

    async def find(self, predicate: Callable[[A], bool] | None = None) -> list[A]:
        """All visible aggregates matching *predicate*, oldest first."""
        tenant = self._tenant()
        staged = self._uow.staged(self._model)
        results: dict[str, A] = {}

        for row in self._uow.database.rows(self._model):
            if row.id in staged or not self._visible(row, tenant):
                continue
            if predicate is None or predicate(row):
                self._uow.stage(self._model, row)
                results[row.id] = row
        for aggregate_id, hit in staged.items():
            if hit is None or not self._visible(hit, tenant):
                continue
            if predicate is None or predicate(hit):  # type: ignore[arg-type]
                results[aggregate_id] = hit  # type: ignore[assignment]

        return sorted(results.values(), key=lambda a: a.created_at)

    async def find_one(self, predicate: Callable[[A], bool]) -> A | None:
        matches = await self.find(predicate)
        return matches[0] if matches else None

    async def remove(self, aggregate: A) -> None:
        tenant = self._tenant()
        if not self._visible(aggregate, tenant):
            raise TenantMismatchError(
                f"Cannot remove {self._model.__name__} of tenant {aggregate.tenant_id}"
            )
        self._uow.track(aggregate)
        self._uow.staged(self._model)[aggregate.id] = None


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Unit of work over an :class:`InMemoryDatabase`."""

    def __init__(
        self,
        database: InMemoryDatabase,
        *,
        translator: Translator | None = None,
        dispatcher: IDomainEventDispatcher | None = None,
    ) -> None:
        super().__init__(translator=translator, dispatcher=dispatcher)
        self.database = database
        self._changes: _Changes = defaultdict(dict)

    def repository(self, model: type[A]) -> TenantScopedRepository[A]:
        return TenantScopedRepository(self, model)

    def stage(self, model: type[AggregateRoot], aggregate: AggregateRoot) -> None:
        self.track(aggregate)
        self._changes[_table(model)][aggregate.id] = aggregate

    def staged(self, model: type[AggregateRoot]) -> dict[str, AggregateRoot | None]:
        return self._changes[_table(model)]

    async def _write(self, outbox: Sequence[OutboxMessage]) -> None:
        await self.database.apply(self._changes, outbox)
        self._changes = defaultdict(dict)

    async def rollback(self) -> None:
        self._changes = defaultdict(dict)
        self._seen = []


UowFactory = Callable[[], InMemoryUnitOfWork]


def memory_uow_factory(
    database: InMemoryDatabase,
    *,
    translator: Translator | None = None,
    dispatcher: IDomainEventDispatcher | None = None,
) -> UowFactory:
    """Return a zero-argument factory producing fresh units of work."""

    def factory() -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(database, translator=translator, dispatcher=dispatcher)

    return factory
