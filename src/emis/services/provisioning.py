"""Local tenant profile kept by every service that depends on identity.

Identity owns tenants.  Dependent services never call back into it; they
build a :class:`TenantProfile` from the tenant topic instead and use it
to enforce plan capacity and suspension locally.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from emis.core.errors import BusinessRuleViolation
from emis.core.ids import utc_now
from emis.domain.aggregate import AggregateRoot
from emis.domain.events import DomainEvent
from emis.integration.events import (
    TenantCreatedIntegrationEvent,
    TenantPlanUpgradedIntegrationEvent,
    TenantSuspendedIntegrationEvent,
)
from emis.integration.retry import ErrorPolicy
from emis.integration.router import SubscriptionTable
from emis.storage.memory import UowFactory

from .plans import plan_max_users

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantProvisioned(DomainEvent):
    tenant_name: str = ""
    subscription_plan: str = ""
    max_users: int = 0


@dataclass
class TenantProfile(AggregateRoot):
    """One row per tenant; ``id`` equals ``tenant_id``."""

    tenant_name: str = ""
    subscription_plan: str = ""
    max_users: int = 0
    subscription_expires_at: datetime | None = None
    suspended: bool = False
    provisioned_at: datetime = field(default_factory=utc_now)

    @classmethod
    def provision(
        cls,
        tenant_id: str,
        tenant_name: str,
        subscription_plan: str,
        max_users: int | None = None,
        subscription_expires_at: datetime | None = None,
    ) -> TenantProfile:
        profile = cls(
            id=tenant_id,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            subscription_plan=subscription_plan,
            max_users=max_users if max_users is not None else plan_max_users(subscription_plan),
            subscription_expires_at=subscription_expires_at,
        )
        profile.record_event(
            TenantProvisioned(
                aggregate_id=tenant_id,
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                subscription_plan=subscription_plan,
                max_users=profile.max_users,
            )
        )
        return profile

    def ensure_capacity(self, current_users: int) -> None:
        """Raise if one more user would not fit the tenant's plan."""
        if self.suspended:
            raise BusinessRuleViolation(f"Tenant {self.tenant_id} is suspended")
        if current_users >= self.max_users:
            raise BusinessRuleViolation(
                f"Tenant {self.tenant_id} reached the {self.subscription_plan} "
                f"limit of {self.max_users} users"
            )

    def suspend(self) -> None:
        self.suspended = True
        self.touch()

    def change_plan(self, plan: str, max_users: int, expires_at: datetime | None) -> None:
        self.subscription_plan = plan
        self.max_users = max_users
        self.subscription_expires_at = expires_at
        self.suspended = False
        self.touch()


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class ProvisionTenant:
    """TenantCreated: create the local profile once."""

    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: TenantCreatedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            profiles = uow.repository(TenantProfile)
            if await profiles.get(event.tenant_id) is not None:
                logger.info("Tenant %s already provisioned", event.tenant_id)
                return
            await profiles.add(
                TenantProfile.provision(
                    tenant_id=event.tenant_id,
                    tenant_name=event.tenant_name,
                    subscription_plan=event.subscription_plan,
                    max_users=event.max_users,
                    subscription_expires_at=event.subscription_expires_at,
                )
            )
            await uow.commit()
        logger.info(
            "Provisioned tenant %s (%s, max %d users)",
            event.tenant_id,
            event.subscription_plan,
            event.max_users,
        )


class SuspendTenantProfile:
    """TenantSuspended: block new users for the tenant."""

    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: TenantSuspendedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            profile = await uow.repository(TenantProfile).get(event.tenant_id)
            if profile is None:
                logger.warning("Suspension for unknown tenant %s ignored", event.tenant_id)
                return
            profile.suspend()
            await uow.commit()


class UpgradeTenantProfile:
    """TenantPlanUpgraded: raise the local capacity."""

    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(
        self, event: TenantPlanUpgradedIntegrationEvent, cancel: asyncio.Event,
    ) -> None:
        async with self._uow_factory() as uow:
            profile = await uow.repository(TenantProfile).get(event.tenant_id)
            if profile is None:
                logger.warning("Plan upgrade for unknown tenant %s ignored", event.tenant_id)
                return
            profile.change_plan(
                event.subscription_plan,
                event.max_users,
                event.subscription_expires_at,
            )
            await uow.commit()


def subscribe_provisioning(
    table: SubscriptionTable,
    uow_factory: UowFactory,
    *,
    service: str,
    max_attempts: int = 5,
) -> None:
    policy = ErrorPolicy(max_attempts=max_attempts)
    table.subscribe(
        TenantCreatedIntegrationEvent,
        ProvisionTenant(uow_factory),
        policy=policy,
        name=f"{service}.provision_tenant",
    )
    table.subscribe(
        TenantSuspendedIntegrationEvent,
        SuspendTenantProfile(uow_factory),
        policy=policy,
        name=f"{service}.suspend_tenant",
    )
    table.subscribe(
        TenantPlanUpgradedIntegrationEvent,
        UpgradeTenantProfile(uow_factory),
        policy=policy,
        name=f"{service}.upgrade_tenant",
    )


async def require_profile(uow, tenant_id: str) -> TenantProfile:
    """Profile of *tenant_id*; a tenant not yet provisioned cannot add users."""
    profile = await uow.repository(TenantProfile).get(tenant_id)
    if profile is None:
        raise BusinessRuleViolation(f"Tenant {tenant_id} is not provisioned in this service")
    return profile
