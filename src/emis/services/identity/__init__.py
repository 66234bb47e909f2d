"""Identity service: tenants, users, and login accounts for teachers."""

from .commands import activate_tenant, register_tenant, suspend_tenant, upgrade_plan
from .handlers import subscribe
from .model import Tenant, User
from .translators import translator

__all__ = [
    "Tenant",
    "User",
    "activate_tenant",
    "register_tenant",
    "subscribe",
    "suspend_tenant",
    "translator",
    "upgrade_plan",
]
