"""Per-operation tenant context.

The tenant that scopes an operation lives in a :class:`~contextvars.ContextVar`.
Every asyncio task gets its own copy of the context at creation time, so
two messages processed concurrently on different partition workers (or two
HTTP requests) never observe each other's tenant.

Usage::

    with tenant_scope(event.tenant_id):
        tenant_id = current_tenant_id()
        ...

A scope is read-only once entered: re-entering with the *same* tenant is
allowed, switching to a different tenant inside an active scope raises
:class:`TenantMismatchError`.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

from emis.core.errors import TenantContextUnavailable, TenantMismatchError


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    tenant_name: str | None = None


_current: ContextVar[TenantContext | None] = ContextVar("emis_tenant", default=None)


def try_current_tenant() -> TenantContext | None:
    """Return the active tenant context, or ``None`` outside any scope."""
    return _current.get()


def current_tenant() -> TenantContext:
    ctx = _current.get()
    if ctx is None:
        raise TenantContextUnavailable("No tenant context is set for this operation")
    return ctx


def current_tenant_id() -> str:
    """Return the tenant id of the current operation.

    Raises:
        TenantContextUnavailable: If called outside a :func:`tenant_scope`.
    """
    return current_tenant().tenant_id


@contextmanager
def tenant_scope(
    tenant_id: str,
    tenant_name: str | None = None,
) -> Iterator[TenantContext]:
    """Bind *tenant_id* for the duration of the block, then restore."""
    if not tenant_id:
        raise TenantContextUnavailable("Cannot open a tenant scope without a tenant id")

    active = _current.get()
    if active is not None and active.tenant_id != tenant_id:
        raise TenantMismatchError(
            f"Tenant {active.tenant_id} is already active; refusing to switch to {tenant_id}"
        )

    ctx = TenantContext(
        tenant_id=tenant_id,
        tenant_name=tenant_name if tenant_name is not None else (active.tenant_name if active else None),
    )
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)
