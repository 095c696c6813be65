"""Tenant and actor resolution for TMS routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import Settings, get_settings
from app.core.logging import logger
from app.models.tms import Actor, UserRole


security = HTTPBearer(auto_error=False)

SUPPORTED_ROLES = frozenset(role.value for role in UserRole)


@dataclass
class TenantContext:
    """Who is calling and which carrier's records they act on."""

    tenant_id: str
    authenticated: bool
    actor: str
    role: str

    def to_actor(self) -> Actor:
        return Actor(uid=self.actor, role=self.role)


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _actor_role(value: Optional[str]) -> str:
    role = _clean(value).lower() or UserRole.ADMIN.value
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def tenant_token_map(raw: str) -> Dict[str, str]:
    """``token:tenant`` pairs separated by commas; malformed pairs are skipped."""
    mapping: Dict[str, str] = {}
    for entry in filter(None, (_clean(segment) for segment in raw.split(","))):
        token, sep, tenant = entry.partition(":")
        if not sep or not _clean(token) or not _clean(tenant):
            logger.warning("Ignoring malformed tenant token mapping entry", entry=entry)
            continue
        mapping[_clean(token)] = _clean(tenant)
    return mapping


def _token_tenant(settings: Settings, credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    token = _clean(credentials.credentials if credentials else None)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")
    tenant_id = tenant_token_map(settings.tenant_tokens).get(token)
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid bearer token")
    return tenant_id


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> TenantContext:
    """Tenant from the bearer token when auth is on, else from ``X-Tenant-ID``.

    The acting user and role always come from ``X-Actor-Id``/``X-Actor-Role``;
    a missing role means admin.
    """
    settings = get_settings()
    requested_tenant = _clean(x_tenant_id)
    role = _actor_role(x_actor_role)
    actor = _clean(x_actor_id)

    if not settings.auth_enabled:
        return TenantContext(
            tenant_id=requested_tenant or _clean(settings.default_tenant_id) or "demo",
            authenticated=False,
            actor=actor or "anonymous",
            role=role,
        )

    tenant_id = _token_tenant(settings, credentials)
    if requested_tenant and requested_tenant != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token tenant mismatch")
    return TenantContext(tenant_id=tenant_id, authenticated=True, actor=actor or "token", role=role)
