from app.platform.security import (
    AuthContext,
    AuthorizationError,
    BaseRepository,
    MissingPermissionError,
    ModuleNotLicensedError,
    TenantRequiredError,
    require_module,
    require_permission,
    system_context,
)

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
