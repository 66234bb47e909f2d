"""Identity domain events with an external contract."""

from __future__ import annotations

from emis.core.enums import ServiceName
from emis.core.errors import TranslationError
from emis.integration.events import (
    TenantCreatedIntegrationEvent,
    TenantPlanUpgradedIntegrationEvent,
    TenantSuspendedIntegrationEvent,
)
from emis.integration.translator import Translator
from emis.services.plans import plan_max_users

from .events import TenantCreated, TenantPlanUpgraded, TenantSuspended

translator = Translator(ServiceName.IDENTITY.value)


@translator.register(TenantCreated)
def tenant_created(event: TenantCreated) -> TenantCreatedIntegrationEvent:
    if event.subscription_expires_at is None:
        raise TranslationError(f"TenantCreated {event.event_id} has no subscription expiry")
    return TenantCreatedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        tenant_name=event.tenant_name,
        subdomain=event.subdomain,
        school_admin_id=event.school_admin_id,
        subscription_plan=event.subscription_plan.value,
        subscription_expires_at=event.subscription_expires_at,
        max_users=plan_max_users(event.subscription_plan),
        connection_string=event.connection_string,
    )


@translator.register(TenantPlanUpgraded)
def tenant_plan_upgraded(event: TenantPlanUpgraded) -> TenantPlanUpgradedIntegrationEvent:
    if event.subscription_expires_at is None:
        raise TranslationError(f"TenantPlanUpgraded {event.event_id} has no subscription expiry")
    return TenantPlanUpgradedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        previous_plan=event.previous_plan.value,
        subscription_plan=event.new_plan.value,
        subscription_expires_at=event.subscription_expires_at,
        max_users=plan_max_users(event.new_plan),
    )


@translator.register(TenantSuspended)
def tenant_suspended(event: TenantSuspended) -> TenantSuspendedIntegrationEvent:
    return TenantSuspendedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        tenant_name=event.tenant_name,
        reason=event.reason,
        suspended_at=event.occurred_at,
    )
