from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from minicrm.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    permissions: set[str] = field(default_factory=set)

    def has(self, permission: str) -> bool:
        return permission in self.permissions or permission in self.roles


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def decode_bearer(request: Request) -> dict | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_bearer(request)
    if payload is None:
        return AuthUser(sub=ANONYMOUS.sub, roles=list(ANONYMOUS.roles))

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    permissions = payload.get("permissions", [])
    if not isinstance(permissions, list):
        permissions = []
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        email=str(payload["email"]).lower() if payload.get("email") else None,
        permissions={str(permission) for permission in permissions},
    )
