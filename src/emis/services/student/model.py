"""Student aggregate."""

from __future__ import annotations

from dataclasses import dataclass, field

from emis.core.enums import StudentStatus
from emis.core.errors import BusinessRuleViolation
from emis.domain.aggregate import AggregateRoot

from .events import ParentContact, StudentAssignedToClass, StudentCreated, StudentDeleted


@dataclass
class Student(AggregateRoot):
    student_code: str = ""
    full_name: str = ""
    class_id: str | None = None
    parents: list[ParentContact] = field(default_factory=list)
    status: StudentStatus = StudentStatus.ACTIVE
    created_by: str = ""

    @classmethod
    def enroll(
        cls,
        tenant_id: str,
        student_code: str,
        full_name: str,
        *,
        class_id: str | None = None,
        parents: tuple[ParentContact, ...] = (),
        created_by: str = "",
    ) -> Student:
        if not (full_name or "").strip():
            raise BusinessRuleViolation("Student full name cannot be empty")
        if not (student_code or "").strip():
            raise BusinessRuleViolation("Student code cannot be empty")
        student = cls(
            tenant_id=tenant_id,
            student_code=student_code.strip(),
            full_name=full_name.strip(),
            class_id=class_id,
            parents=list(parents),
            created_by=created_by,
        )
        student.record_event(
            StudentCreated(
                aggregate_id=student.id,
                tenant_id=tenant_id,
                student_code=student.student_code,
                student_name=student.full_name,
                class_id=class_id,
                parents=tuple(parents),
                created_by=created_by,
            )
        )
        return student

    @property
    def active(self) -> bool:
        return self.status == StudentStatus.ACTIVE

    def assign_to_class(self, class_id: str) -> None:
        if not self.active:
            raise BusinessRuleViolation(f"Student {self.id} is deleted")
        if class_id == self.class_id:
            return
        self.class_id = class_id
        self.touch()
        self.record_event(
            StudentAssignedToClass(aggregate_id=self.id, tenant_id=self.tenant_id, class_id=class_id)
        )

    def delete(self) -> None:
        if not self.active:
            raise BusinessRuleViolation(f"Student {self.id} is already deleted")
        self.status = StudentStatus.DELETED
        self.touch()
        self.record_event(
            StudentDeleted(aggregate_id=self.id, tenant_id=self.tenant_id, student_name=self.full_name)
        )
