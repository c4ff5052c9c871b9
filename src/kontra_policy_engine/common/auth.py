"""Tenant context for request handling.

Authentication happens upstream in the API gateway, which forwards the
resolved organization and user as ``X-Tenant-ID`` and ``X-User-ID`` headers.
The engine trusts these values and performs no authorization itself.
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException

from kontra_policy_engine.common.observability import bind_request_context


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Identity of the calling organization and actor."""

    tenant_id: uuid.UUID
    user_id: uuid.UUID | None = None


def _parse_uuid(raw: str, header: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{header} must be a UUID") from exc


async def get_current_user(
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> TenantContext:
    """FastAPI dependency resolving the TenantContext from gateway headers.

    Raises:
        HTTPException: 400 when the tenant header is missing or not a UUID.
    """
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")

    tenant = TenantContext(
        tenant_id=_parse_uuid(x_tenant_id, "X-Tenant-ID"),
        user_id=_parse_uuid(x_user_id, "X-User-ID") if x_user_id else None,
    )
    bind_request_context(tenant_id=str(tenant.tenant_id))
    return tenant
