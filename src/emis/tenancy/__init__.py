"""Tenant context carrier: per-operation tenant scope and HTTP resolution."""

from emis.tenancy.context import (
    TenantContext,
    current_tenant,
    current_tenant_id,
    tenant_scope,
    try_current_tenant,
)

__all__ = [
    "TenantContext",
    "current_tenant",
    "current_tenant_id",
    "tenant_scope",
    "try_current_tenant",
]
