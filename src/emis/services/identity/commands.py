"""Identity commands.

Each command opens its unit of work, changes aggregates, and commits.
The commit translates tenant facts into integration events on the
``emis.identity.tenants`` topic.
"""

from __future__ import annotations

import logging

from emis.core.enums import SubscriptionPlan, UserRole
from emis.core.errors import BusinessRuleViolation
from emis.storage.memory import InMemoryUnitOfWork
from emis.tenancy.context import tenant_scope

from .model import Tenant, User, normalize_subdomain

logger = logging.getLogger(__name__)


async def register_tenant(
    uow: InMemoryUnitOfWork,
    *,
    name: str,
    subdomain: str,
    admin_name: str,
    admin_phone: str,
    admin_email: str | None = None,
    connection_string: str | None = None,
) -> tuple[Tenant, User]:
    """Create a school on the Trial plan together with its school admin.

    Raises:
        BusinessRuleViolation: The subdomain is invalid or already taken.
    """
    wanted = normalize_subdomain(subdomain)
    async with uow:
        tenants = uow.repository(Tenant)
        if await tenants.find_one(lambda t: t.subdomain == wanted) is not None:
            raise BusinessRuleViolation(f"Subdomain {wanted!r} is already taken")

        tenant = Tenant.register(
            name,
            wanted,
            contact_email=admin_email,
            contact_phone=admin_phone,
            connection_string=connection_string,
        )
        with tenant_scope(tenant.id, tenant.name):
            admin = User.create(
                tenant.id,
                admin_name,
                admin_phone,
                UserRole.SCHOOL_ADMIN,
                email=admin_email,
            )
            await uow.repository(User).add(admin)
            await tenants.add(tenant)
            tenant.announce_created(admin.id)
            await uow.commit()

    logger.info("Registered tenant %s (%s) with admin %s", tenant.id, tenant.subdomain, admin.id)
    return tenant, admin


async def upgrade_plan(
    uow: InMemoryUnitOfWork,
    tenant_id: str,
    plan: SubscriptionPlan,
    *,
    duration_months: int = 12,
) -> Tenant:
    async with uow:
        tenant = await uow.repository(Tenant).require(tenant_id)
        tenant.upgrade_plan(plan, duration_months)
        await uow.commit()
    return tenant


async def suspend_tenant(uow: InMemoryUnitOfWork, tenant_id: str, reason: str) -> Tenant:
    async with uow:
        tenant = await uow.repository(Tenant).require(tenant_id)
        tenant.suspend(reason)
        await uow.commit()
    logger.warning("Suspended tenant %s: %s", tenant_id, reason)
    return tenant


async def activate_tenant(uow: InMemoryUnitOfWork, tenant_id: str) -> Tenant:
    async with uow:
        tenant = await uow.repository(Tenant).require(tenant_id)
        tenant.activate()
        await uow.commit()
    return tenant
