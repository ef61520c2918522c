from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for licence, tenant and permission failures."""

    code = "forbidden"
    status_code = 403


class TenantRequiredError(AuthorizationError):
    code = "tenant_required"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Unauthorized: no tenant on the current identity")


class ModuleNotLicensedError(AuthorizationError):
    """Raised when the tenant's licence does not include the requested module."""

    code = "crm_not_licensed"

    def __init__(self, tenant_id: str, module: str) -> None:
        self.tenant_id = tenant_id
        self.module = module
        super().__init__(f"Forbidden: module '{module}' is not licensed for tenant '{tenant_id}'")


class MissingPermissionError(AuthorizationError):
    code = "missing_permission"

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Missing permission: {permission}")
