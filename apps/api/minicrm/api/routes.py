from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from minicrm.backup.api import router as backup_router
from minicrm.core.auth import AuthUser, get_current_user
from minicrm.core.config import get_settings
from minicrm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(backup_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
        "backup_format": settings.backup_format_version,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, object]:
    return {
        "sub": user.sub,
        "email": user.email,
        "roles": user.roles,
        "permissions": sorted(user.permissions),
        "can_export": user.has("backup.export"),
        "can_import": user.has("backup.import"),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.has("system.metrics.read"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
