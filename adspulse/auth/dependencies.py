import hmac
from typing import Any

from fastapi import Depends, Header, Request

from adspulse.auth.context import Principal
from adspulse.auth.jwt import decode_access_token
from adspulse.config import settings
from adspulse.domain.errors import ApiError
from adspulse.observability import incr_metric, log_event


ADMIN_ROLES = ("owner", "admin")


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _claim_str(claims: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = claims.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _claim_roles(claims: dict[str, Any]) -> tuple[str, ...]:
    roles: list[str] = []
    raw_roles = claims.get("roles")
    if isinstance(raw_roles, list):
        roles.extend(str(item) for item in raw_roles if isinstance(item, str))
    role = _claim_str(claims, "role")
    if role:
        roles.append(role)
    return tuple(roles)


async def get_current_principal(authorization: str | None = Header(None)) -> Principal:
    """
    Bearer JWT auth. Tenant scope comes from tenant_id (or brand_id), roles from
    role/roles claims.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise ApiError(
            status_code=401,
            code="AUTH_TOKEN_REQUIRED",
            message="Missing authorization header.",
        )
    if not settings.jwt_secret:
        raise ApiError(
            status_code=503,
            code="AUTH_NOT_CONFIGURED",
            message="Token verification is not configured.",
        )

    claims = decode_access_token(token)
    if claims is None:
        incr_metric("auth.token.rejected")
        raise ApiError(
            status_code=401,
            code="AUTH_TOKEN_INVALID",
            message="Invalid or expired token.",
        )

    user_id = _claim_str(claims, "sub", "user_id")
    if not user_id:
        raise ApiError(
            status_code=401,
            code="JWT_SUB_MISSING",
            message="JWT subject claim is missing.",
        )

    return Principal(
        user_id=user_id,
        tenant_id=_claim_str(claims, "tenant_id", "brand_id", "tenantId"),
        roles=_claim_roles(claims),
    )


def require_roles(*allowed: str):
    async def _require(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_any_role(allowed):
            raise ApiError(
                status_code=403,
                code="FORBIDDEN_ROLE",
                message="User role does not have access to this endpoint.",
            )
        return principal

    return _require


async def require_admin(principal: Principal = Depends(require_roles(*ADMIN_ROLES))) -> Principal:
    return principal


def assert_tenant_access(principal: Principal, tenant_id: str | None) -> None:
    if not tenant_id:
        return
    if not principal.tenant_id:
        raise ApiError(
            status_code=403,
            code="TENANT_CLAIM_MISSING",
            message="Tenant claim is missing in JWT.",
        )
    if principal.tenant_id != tenant_id:
        raise ApiError(
            status_code=403,
            code="TENANT_ACCESS_DENIED",
            message="Requested tenant is outside of current JWT tenant scope.",
        )


async def require_scheduler_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> None:
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise ApiError(
            status_code=503,
            code="SCHEDULER_NOT_CONFIGURED",
            message="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret.encode("utf-8"),
        configured_secret.encode("utf-8"),
    ):
        incr_metric("sync.scheduled.auth_failed")
        log_event("sync_scheduled_auth_failed", request_id=request_id)
        raise ApiError(
            status_code=401,
            code="SCHEDULER_SECRET_INVALID",
            message="invalid scheduler secret",
        )
    incr_metric("sync.scheduled.auth_succeeded")
