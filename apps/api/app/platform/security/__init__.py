from app.platform.security.context import AuthContext, system_context
from app.platform.security.errors import (
    AuthorizationError,
    MissingPermissionError,
    ModuleNotLicensedError,
    TenantRequiredError,
)
from app.platform.security.guards import require_module, require_permission
from app.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
    "MissingPermissionError",
    "ModuleNotLicensedError",
    "TenantRequiredError",
    "require_module",
    "require_permission",
    "system_context",
]
