import logging
from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status

from minicrm.core.auth import AuthUser, get_current_user

logger = logging.getLogger("minicrm.auth")


def require_permissions(*permissions: str) -> Callable[..., Awaitable[AuthUser]]:
    """Dependency that admits the caller only when every permission is granted.

    A permission is granted either explicitly or through a role of the same name.
    """

    async def checker(request: Request, user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing = sorted(permission for permission in permissions if not user.has(permission))
        if missing:
            logger.warning(
                "auth.permission_denied",
                extra={"path": request.url.path, "method": request.method, "reason": ",".join(missing)},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        context = getattr(request.state, "context", None)
        if context is not None and context.user_id is None:
            context.user_id = user.sub
        return user

    return checker
