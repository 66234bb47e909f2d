"""Student commands.  All run for the tenant of the current context."""

from __future__ import annotations

import logging

from emis.core.errors import BusinessRuleViolation
from emis.services.provisioning import require_profile
from emis.storage.memory import InMemoryUnitOfWork
from emis.tenancy.context import current_tenant_id

from .events import ParentContact
from .model import Student

logger = logging.getLogger(__name__)


async def create_student(
    uow: InMemoryUnitOfWork,
    *,
    student_code: str,
    full_name: str,
    class_id: str | None = None,
    parents: tuple[ParentContact, ...] = (),
    created_by: str = "",
) -> Student:
    """Enroll a student.

    Raises:
        BusinessRuleViolation: The tenant is unknown here, suspended, or at
            its plan capacity, or the student code is taken.
    """
    tenant_id = current_tenant_id()
    async with uow:
        profile = await require_profile(uow, tenant_id)
        students = uow.repository(Student)
        active = await students.find(lambda s: s.active)
        profile.ensure_capacity(len(active))
        if any(s.student_code == student_code.strip() for s in active):
            raise BusinessRuleViolation(f"Student code {student_code!r} already exists")

        student = Student.enroll(
            tenant_id,
            student_code,
            full_name,
            class_id=class_id,
            parents=parents,
            created_by=created_by,
        )
        await students.add(student)
        await uow.commit()
    logger.info("Enrolled student %s for tenant %s", student.id, tenant_id)
    return student


async def assign_class(uow: InMemoryUnitOfWork, student_id: str, class_id: str) -> Student:
    async with uow:
        student = await uow.repository(Student).require(student_id)
        student.assign_to_class(class_id)
        await uow.commit()
    return student


async def delete_student(uow: InMemoryUnitOfWork, student_id: str) -> Student:
    async with uow:
        student = await uow.repository(Student).require(student_id)
        student.delete()
        await uow.commit()
    logger.info("Deleted student %s", student_id)
    return student
