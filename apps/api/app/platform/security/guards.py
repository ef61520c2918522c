from __future__ import annotations

from app.platform.security.context import AuthContext
from app.platform.security.errors import MissingPermissionError, ModuleNotLicensedError


def require_module(ctx: AuthContext, module: str) -> None:
    if not ctx.has_module(module):
        raise ModuleNotLicensedError(ctx.tenant_id, module)


def require_permission(ctx: AuthContext, permission: str) -> None:
    if not ctx.has_permission(permission):
        raise MissingPermissionError(permission)
