from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from minicrm.backup.errors import BackupPipelineError
from minicrm.backup.parser import decode_body
from minicrm.backup.service import backup_service
from minicrm.context import get_correlation_id
from minicrm.core.auth import AuthUser
from minicrm.core.database import get_db
from minicrm.core.rbac import require_permissions

router = APIRouter(prefix="/api/backup", tags=["backup"])


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    snapshot: dict[str, Any] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    content: dict[str, Any] = {
        "success": False,
        "code": code,
        "error": message,
        "details": details,
        "correlation_id": correlation_id,
    }
    if snapshot is not None:
        content["backupAutomatico"] = snapshot
    return JSONResponse(status_code=status_code, content=content)


def _pipeline_error_response(request: Request, exc: BackupPipelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        snapshot=exc.snapshot,
    )


async def backup_payload(request: Request) -> Any:
    return decode_body(await request.body())


@router.get("/export", response_model=dict[str, Any])
def export_backup(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("backup.export")),
) -> dict[str, Any] | JSONResponse:
    try:
        return backup_service.export_backup(db, actor=user, context=getattr(request.state, "context", None))
    except BackupPipelineError as exc:
        return _pipeline_error_response(request, exc)


@router.post("/import", response_model=dict[str, Any])
def import_backup(
    request: Request,
    payload: Any = Depends(backup_payload),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("backup.import")),
) -> dict[str, Any] | JSONResponse:
    try:
        return backup_service.import_backup(db, payload, actor=user, context=getattr(request.state, "context", None))
    except BackupPipelineError as exc:
        return _pipeline_error_response(request, exc)


@router.get("/status", response_model=dict[str, Any])
def backup_status(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("backup.export")),
) -> dict[str, Any]:
    return backup_service.status(db)
