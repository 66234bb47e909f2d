"""HTTP-side tenant resolution.

Every inbound request must name its tenant, either through the
``X-Tenant-Id`` header or through a ``tenant_id`` claim that an upstream
authentication middleware stored on ``request.state.claims``.  Requests
without a tenant are rejected with 400 before reaching the application.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from emis.core.errors import TenantContextUnavailable

from .context import TenantContext, tenant_scope

logger = logging.getLogger(__name__)

TENANT_ID_HEADER = "X-Tenant-Id"
TENANT_NAME_HEADER = "X-Tenant-Name"
TENANT_ID_CLAIM = "tenant_id"


class HeaderTenantResolver:
    """Resolve the tenant from request headers, falling back to token claims."""

    def __init__(
        self,
        id_header: str = TENANT_ID_HEADER,
        name_header: str = TENANT_NAME_HEADER,
        claim: str = TENANT_ID_CLAIM,
    ) -> None:
        self._id_header = id_header
        self._name_header = name_header
        self._claim = claim

    def resolve(
        self,
        headers: Mapping[str, str],
        claims: Mapping[str, Any] | None = None,
    ) -> TenantContext:
        """Return the request's tenant.

        Raises:
            TenantContextUnavailable: Neither header nor claim carries a
                well-formed tenant id.
        """
        raw = headers.get(self._id_header) or headers.get(self._id_header.lower())
        if not raw and claims:
            raw = claims.get(self._claim)
        if not raw:
            raise TenantContextUnavailable(
                f"Request carries neither {self._id_header} nor a {self._claim} claim"
            )

        try:
            tenant_id = str(uuid.UUID(str(raw)))
        except ValueError as exc:
            raise TenantContextUnavailable(f"Malformed tenant id: {raw!r}") from exc

        name = headers.get(self._name_header) or headers.get(self._name_header.lower())
        return TenantContext(tenant_id=tenant_id, tenant_name=name or None)


class TenantContextMiddleware:
    """ASGI middleware that runs each request inside its tenant's scope."""

    def __init__(
        self,
        app: ASGIApp,
        resolver: HeaderTenantResolver | None = None,
        exempt_paths: tuple[str, ...] = ("/health", "/metrics"),
    ) -> None:
        self.app = app
        self._resolver = resolver or HeaderTenantResolver()
        self._exempt = exempt_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self._exempt:
            await self.app(scope, receive, send)
            return

        claims = (scope.get("state") or {}).get("claims")
        try:
            ctx = self._resolver.resolve(Headers(scope=scope), claims)
        except TenantContextUnavailable as exc:
            logger.warning("Rejecting request to %s: %s", scope.get("path"), exc)
            response = JSONResponse({"detail": str(exc)}, status_code=400)
            await response(scope, receive, send)
            return

        with tenant_scope(ctx.tenant_id, ctx.tenant_name):
            await self.app(scope, receive, send)
