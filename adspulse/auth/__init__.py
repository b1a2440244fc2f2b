from adspulse.auth.context import Principal
from adspulse.auth.dependencies import (
    ADMIN_ROLES,
    assert_tenant_access,
    get_current_principal,
    require_admin,
    require_roles,
    require_scheduler_secret,
)
from adspulse.auth.jwt import create_access_token

__all__ = [
    "ADMIN_ROLES",
    "Principal",
    "assert_tenant_access",
    "create_access_token",
    "get_current_principal",
    "require_admin",
    "require_roles",
    "require_scheduler_secret",
]
