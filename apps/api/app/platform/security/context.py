from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity passed explicitly into every service call.

    ``tenant_id`` bounds every query and write; nothing in the service layer
    reads tenant or user from ambient state.
    """

    user_id: str
    tenant_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    licensed_modules: list[str] = field(default_factory=list)

    def has_permission(self, permission: str) -> bool:
        return self.is_super_admin or permission in self.permissions

    def has_module(self, module: str) -> bool:
        return module in self.licensed_modules


def system_context(tenant_id: str, correlation_id: str | None = None) -> AuthContext:
    """Context for background work (scheduler ticks, event-driven rescoring)."""
    return AuthContext(user_id="system", tenant_id=tenant_id, correlation_id=correlation_id, is_super_admin=True)
