"""PostgreSQL persistence for the outbox and dead-letter tables."""

from .connection import create_all, create_engine, create_session_factory, session_scope
from .models import Base, DeadLetterRecord, OutboxRecord
from .repos import SqlAlchemyUnitOfWork, SqlDeadLetterStore, SqlOutboxStore

__all__ = [
    "Base",
    "DeadLetterRecord",
    "OutboxRecord",
    "SqlAlchemyUnitOfWork",
    "SqlDeadLetterStore",
    "SqlOutboxStore",
    "create_all",
    "create_engine",
    "create_session_factory",
    "session_scope",
]
