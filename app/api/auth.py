"""Caller identity — JWT bearer dependency resolving the acting tenant."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.services.auth import decode_token

security = HTTPBearer()


@dataclass(frozen=True)
class Principal:
    subject: str
    tenant_id: Optional[str]
    is_admin: bool = False


async def get_current_principal(
    creds: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Decode the JWT issued by the tenant-management service."""
    payload = decode_token(creds.credentials)
    if payload is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token")
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token payload")
    is_admin = bool(payload.get("is_admin", False))
    tenant_id = payload.get("tenant_id")
    if not tenant_id and not is_admin:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token is not bound to a tenant")
    return Principal(subject=subject, tenant_id=tenant_id, is_admin=is_admin)


def ensure_tenant_access(principal: Principal, tenant_id: str):
    if principal.is_admin:
        return
    if principal.tenant_id != tenant_id:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Access denied")


def resolve_tenant(principal: Principal, requested: Optional[str]) -> str:
    """Tenant the request acts on: admins may pick any, others only their own."""
    if requested:
        ensure_tenant_access(principal, requested)
        return requested
    if principal.tenant_id:
        return principal.tenant_id
    raise HTTPException(status.HTTP_400_BAD_REQUEST, "tenant_id is required")


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin access required")
    return principal
