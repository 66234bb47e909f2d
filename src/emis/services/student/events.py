"""Student domain events."""

from __future__ import annotations

from dataclasses import dataclass

from emis.core.enums import ParentRelationship
from emis.domain.events import DomainEvent


@dataclass(frozen=True)
class ParentContact:
    parent_id: str
    full_name: str
    phone_number: str
    relationship: ParentRelationship = ParentRelationship.GUARDIAN


@dataclass(frozen=True)
class StudentCreated(DomainEvent):
    student_code: str = ""
    student_name: str = ""
    class_id: str | None = None
    parents: tuple[ParentContact, ...] = ()
    created_by: str = ""


@dataclass(frozen=True)
class StudentAssignedToClass(DomainEvent):
    class_id: str = ""


@dataclass(frozen=True)
class StudentDeleted(DomainEvent):
    student_name: str = ""
