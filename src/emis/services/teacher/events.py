"""Teacher domain events."""

from __future__ import annotations

from dataclasses import dataclass

from emis.domain.events import DomainEvent


@dataclass(frozen=True)
class TeacherCreated(DomainEvent):
    full_name: str = ""
    phone_number: str = ""
    email: str | None = None


@dataclass(frozen=True)
class TeacherDeleted(DomainEvent):
    full_name: str = ""
