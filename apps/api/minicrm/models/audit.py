from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from minicrm.core.database import Base
from minicrm.store.models import utcnow

AUDIT_LEVELS = ("INFO", "WARNING", "ERROR")


class AuditLog(Base):
    """Append-only trail of backup exports, imports and the deletes they perform."""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_correlation_id", "correlation_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="INFO")
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
