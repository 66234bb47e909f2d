"""Identity aggregates: the tenant (school) and its users.

Business rules
--------------
* A subdomain is lowercase letters, digits and inner hyphens, 3 to 63
  characters, unique across the platform.
* New tenants start on the Trial plan, which expires after 30 days.
* Plans can only move up: Trial < Basic < Standard < Professional <
  Enterprise.
* An Inactive tenant is permanently closed: it cannot be suspended,
  activated, or renewed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ClassVar

from emis.core.enums import SubscriptionPlan, TenantStatus, UserRole, UserStatus
from emis.core.errors import BusinessRuleViolation
from emis.core.ids import new_id, utc_now
from emis.domain.aggregate import AggregateRoot
from emis.services.plans import plan_max_users

from .events import (
    TenantActivated,
    TenantCreated,
    TenantPlanUpgraded,
    TenantSuspended,
    UserCreated,
    UserStatusChanged,
)

TRIAL_DAYS = 30
MONTH_DAYS = 30

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")


def normalize_subdomain(value: str) -> str:
    subdomain = (value or "").strip().lower()
    if not _SUBDOMAIN_RE.match(subdomain):
        raise BusinessRuleViolation(f"Invalid subdomain {value!r}")
    return subdomain


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not 3 <= len(name) <= 255:
        raise BusinessRuleViolation("Tenant name must be between 3 and 255 characters")
    return name


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

@dataclass
class Tenant(AggregateRoot):
    """A school.  Its ``tenant_id`` is its own ``id``."""

    tenant_scoped: ClassVar[bool] = False

    name: str = ""
    subdomain: str = ""
    status: TenantStatus = TenantStatus.TRIAL
    subscription_plan: SubscriptionPlan = SubscriptionPlan.TRIAL
    subscription_expires_at: datetime | None = None
    connection_string: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None

    @classmethod
    def register(
        cls,
        name: str,
        subdomain: str,
        *,
        contact_email: str | None = None,
        contact_phone: str | None = None,
        connection_string: str | None = None,
    ) -> Tenant:
        tenant_id = new_id()
        return cls(
            id=tenant_id,
            tenant_id=tenant_id,
            name=_validate_name(name),
            subdomain=normalize_subdomain(subdomain),
            contact_email=contact_email,
            contact_phone=contact_phone,
            connection_string=connection_string,
            subscription_expires_at=utc_now() + timedelta(days=TRIAL_DAYS),
        )

    @property
    def max_users(self) -> int:
        return plan_max_users(self.subscription_plan)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.subscription_expires_at is not None and self.subscription_expires_at < now

    def announce_created(self, school_admin_id: str) -> None:
        """Record TenantCreated once the school admin exists."""
        self.record_event(
            TenantCreated(
                aggregate_id=self.id,
                tenant_id=self.id,
                tenant_name=self.name,
                subdomain=self.subdomain,
                school_admin_id=school_admin_id,
                subscription_plan=self.subscription_plan,
                subscription_expires_at=self.subscription_expires_at,
                connection_string=self.connection_string,
            )
        )

    def upgrade_plan(self, plan: SubscriptionPlan, duration_months: int = 12) -> None:
        if plan.rank <= self.subscription_plan.rank:
            raise BusinessRuleViolation(
                f"Cannot downgrade from {self.subscription_plan.value} to {plan.value}"
            )
        previous = self.subscription_plan
        self.subscription_plan = plan
        self.subscription_expires_at = utc_now() + timedelta(days=MONTH_DAYS * duration_months)
        if self.status == TenantStatus.TRIAL:
            self.status = TenantStatus.ACTIVE
        self.touch()
        self.record_event(
            TenantPlanUpgraded(
                aggregate_id=self.id,
                tenant_id=self.id,
                previous_plan=previous,
                new_plan=plan,
                subscription_expires_at=self.subscription_expires_at,
            )
        )

    def renew(self, duration_months: int = 12) -> None:
        self._reject_if_inactive("renew")
        now = utc_now()
        start = self.subscription_expires_at or now
        if start < now:
            start = now
        self.subscription_expires_at = start + timedelta(days=MONTH_DAYS * duration_months)
        if self.status == TenantStatus.SUSPENDED:
            self.status = TenantStatus.ACTIVE
        self.touch()

    def suspend(self, reason: str) -> None:
        self._reject_if_inactive("suspend")
        self.status = TenantStatus.SUSPENDED
        self.touch()
        self.record_event(
            TenantSuspended(
                aggregate_id=self.id,
                tenant_id=self.id,
                tenant_name=self.name,
                reason=reason,
            )
        )

    def activate(self) -> None:
        self._reject_if_inactive("activate")
        self.status = TenantStatus.ACTIVE
        self.touch()
        self.record_event(
            TenantActivated(aggregate_id=self.id, tenant_id=self.id, tenant_name=self.name)
        )

    def deactivate(self) -> None:
        self.status = TenantStatus.INACTIVE
        self.touch()

    def _reject_if_inactive(self, action: str) -> None:
        if self.status == TenantStatus.INACTIVE:
            raise BusinessRuleViolation(f"Cannot {action} inactive tenant {self.id}")


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

@dataclass
class User(AggregateRoot):
    full_name: str = ""
    phone_number: str = ""
    email: str | None = None
    role: UserRole = UserRole.TEACHER
    status: UserStatus = UserStatus.PENDING_ACTIVATION
    # Id of the matching record in another service (teacher, parent).
    entity_id: str | None = None

    @classmethod
    def create(
        cls,
        tenant_id: str,
        full_name: str,
        phone_number: str,
        role: UserRole,
        *,
        email: str | None = None,
        entity_id: str | None = None,
    ) -> User:
        if not (full_name or "").strip():
            raise BusinessRuleViolation("User full name cannot be empty")
        if not (phone_number or "").strip():
            raise BusinessRuleViolation("User phone number cannot be empty")
        user = cls(
            tenant_id=tenant_id,
            full_name=full_name.strip(),
            phone_number=phone_number.strip(),
            email=email,
            role=role,
            entity_id=entity_id,
            status=UserStatus.ACTIVE if role == UserRole.SCHOOL_ADMIN else UserStatus.PENDING_ACTIVATION,
        )
        user.record_event(
            UserCreated(
                aggregate_id=user.id,
                tenant_id=tenant_id,
                phone_number=user.phone_number,
                role=role,
                entity_id=entity_id,
            )
        )
        return user

    def activate(self) -> None:
        self._change_status(UserStatus.ACTIVE)

    def deactivate(self) -> None:
        self._change_status(UserStatus.INACTIVE)

    def _change_status(self, status: UserStatus) -> None:
        if status == self.status:
            return
        previous, self.status = self.status, status
        self.touch()
        self.record_event(
            UserStatusChanged(
                aggregate_id=self.id,
                tenant_id=self.tenant_id,
                previous_status=previous,
                new_status=status,
            )
        )
