"""Teacher aggregate."""

from __future__ import annotations

from dataclasses import dataclass

from emis.core.enums import TeacherStatus
from emis.core.errors import BusinessRuleViolation
from emis.domain.aggregate import AggregateRoot

from .events import TeacherCreated, TeacherDeleted


@dataclass
class Teacher(AggregateRoot):
    full_name: str = ""
    phone_number: str = ""
    email: str | None = None
    status: TeacherStatus = TeacherStatus.ACTIVE

    @classmethod
    def hire(
        cls,
        tenant_id: str,
        full_name: str,
        phone_number: str,
        *,
        email: str | None = None,
    ) -> Teacher:
        if not (full_name or "").strip():
            raise BusinessRuleViolation("Teacher full name cannot be empty")
        if not (phone_number or "").strip():
            raise BusinessRuleViolation("Teacher phone number cannot be empty")
        teacher = cls(
            tenant_id=tenant_id,
            full_name=full_name.strip(),
            phone_number=phone_number.strip(),
            email=email,
        )
        teacher.record_event(
            TeacherCreated(
                aggregate_id=teacher.id,
                tenant_id=tenant_id,
                full_name=teacher.full_name,
                phone_number=teacher.phone_number,
                email=email,
            )
        )
        return teacher

    @property
    def active(self) -> bool:
        return self.status == TeacherStatus.ACTIVE

    def delete(self) -> None:
        if not self.active:
            raise BusinessRuleViolation(f"Teacher {self.id} is already deleted")
        self.status = TeacherStatus.DELETED
        self.touch()
        self.record_event(
            TeacherDeleted(aggregate_id=self.id, tenant_id=self.tenant_id, full_name=self.full_name)
        )
