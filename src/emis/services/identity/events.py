"""Identity domain events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from emis.core.enums import SubscriptionPlan, UserRole, UserStatus
from emis.domain.events import DomainEvent


@dataclass(frozen=True)
class TenantCreated(DomainEvent):
    tenant_name: str = ""
    subdomain: str = ""
    school_admin_id: str = ""
    subscription_plan: SubscriptionPlan = SubscriptionPlan.TRIAL
    subscription_expires_at: datetime | None = None
    connection_string: str | None = None


@dataclass(frozen=True)
class TenantPlanUpgraded(DomainEvent):
    previous_plan: SubscriptionPlan = SubscriptionPlan.TRIAL
    new_plan: SubscriptionPlan = SubscriptionPlan.TRIAL
    subscription_expires_at: datetime | None = None


@dataclass(frozen=True)
class TenantSuspended(DomainEvent):
    tenant_name: str = ""
    reason: str = ""


@dataclass(frozen=True)
class TenantActivated(DomainEvent):
    tenant_name: str = ""


@dataclass(frozen=True)
class UserCreated(DomainEvent):
    phone_number: str = ""
    role: UserRole = UserRole.TEACHER
    entity_id: str | None = None


@dataclass(frozen=True)
class UserStatusChanged(DomainEvent):
    previous_status: UserStatus = UserStatus.ACTIVE
    new_status: UserStatus = UserStatus.ACTIVE
