from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str | None = None
    licensed_modules: list[str] = field(default_factory=list)


def _as_str_list(value: object, default: list[str]) -> list[str]:
    if not isinstance(value, list):
        return default
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    tenant_claim = payload.get("tenant_id")
    tenant_id = str(tenant_claim) if tenant_claim else None
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        context.tenant_id = tenant_id
    return AuthUser(
        sub=subject,
        roles=_as_str_list(payload.get("roles"), ["user"]),
        tenant_id=tenant_id,
        licensed_modules=_as_str_list(payload.get("licensed_modules"), []),
    )
