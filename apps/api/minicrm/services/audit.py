from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.context import get_correlation_id
from minicrm.core.context import RequestContext
from minicrm.models.audit import AUDIT_LEVELS, AuditLog


def _client_metadata(context: RequestContext | None) -> dict[str, Any]:
    if context is None:
        return {}
    return {"client_ip": context.client_ip, "user_agent": context.user_agent}


def write_audit_log(
    db: Session,
    context: RequestContext | None,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: dict[str, Any] | None = None,
    level: str = "INFO",
) -> AuditLog:
    """Commit one audit row on its own, so it survives a later rollback of the import."""
    if level not in AUDIT_LEVELS:
        raise ValueError(f"unknown audit level: {level}")

    correlation_id = context.correlation_id if context is not None else None
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        level=level,
        correlation_id=correlation_id or get_correlation_id(),
        event_metadata={**_client_metadata(context), **(metadata or {})},
    )
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(entry)
    return entry
