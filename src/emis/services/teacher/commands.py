"""Teacher commands.  All run for the tenant of the current context."""

from __future__ import annotations

import logging

from emis.core.errors import BusinessRuleViolation
from emis.services.provisioning import require_profile
from emis.storage.memory import InMemoryUnitOfWork
from emis.tenancy.context import current_tenant_id

from .model import Teacher

logger = logging.getLogger(__name__)


async def create_teacher(
    uow: InMemoryUnitOfWork,
    *,
    full_name: str,
    phone_number: str,
    email: str | None = None,
) -> Teacher:
    tenant_id = current_tenant_id()
    async with uow:
        profile = await require_profile(uow, tenant_id)
        teachers = uow.repository(Teacher)
        active = await teachers.find(lambda t: t.active)
        profile.ensure_capacity(len(active))
        if any(t.phone_number == phone_number.strip() for t in active):
            raise BusinessRuleViolation(f"A teacher with phone {phone_number} already exists")

        teacher = Teacher.hire(tenant_id, full_name, phone_number, email=email)
        await teachers.add(teacher)
        await uow.commit()
    logger.info("Hired teacher %s for tenant %s", teacher.id, tenant_id)
    return teacher


async def delete_teacher(uow: InMemoryUnitOfWork, teacher_id: str) -> Teacher:
    async with uow:
        teacher = await uow.repository(Teacher).require(teacher_id)
        teacher.delete()
        await uow.commit()
    logger.info("Deleted teacher %s", teacher_id)
    return teacher
