"""Persistence: unit of work, in-memory tables, PostgreSQL outbox."""

from .memory import (
    InMemoryDatabase,
    InMemoryUnitOfWork,
    TenantScopedRepository,
    UowFactory,
    memory_uow_factory,
)
from .unit_of_work import AbstractUnitOfWork, CommitResult

__all__ = [
    "AbstractUnitOfWork",
    "CommitResult",
    "InMemoryDatabase",
    "InMemoryUnitOfWork",
    "TenantScopedRepository",
    "UowFactory",
    "memory_uow_factory",
]
