from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.backup.errors import ConcurrentImportRejection
from minicrm.store.models import HOLDER_MAX_LENGTH, BackupLock, utcnow

logger = logging.getLogger("minicrm.backup")

IMPORT_LOCK_NAME = "backup-import"


def lock_holder(actor_id: str, run_id: str) -> str:
    """Holder name that fits the lock column whatever the actor and run ids look like."""
    holder = f"{actor_id}:{run_id}"
    if len(holder) <= HOLDER_MAX_LENGTH:
        return holder
    digest = hashlib.sha1(run_id.encode("utf-8")).hexdigest()[:16]
    return f"{actor_id[: HOLDER_MAX_LENGTH - len(digest) - 1]}:{digest}"


def _aware(value: datetime) -> datetime:
    # sqlite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class ImportLock:
    """Advisory lock row that keeps two imports from replacing data at once."""

    name: str = IMPORT_LOCK_NAME

    def acquire(self, session: Session, holder: str, ttl_seconds: int) -> None:
        now = utcnow()
        try:
            current = session.get(BackupLock, self.name)
            if current is not None and _aware(current.expires_at) > now:
                session.rollback()
                raise ConcurrentImportRejection(
                    "Another import is already running; retry once it finishes",
                    details={"holder": current.holder, "expires_at": _aware(current.expires_at).isoformat()},
                )
            if current is not None:
                logger.warning("backup.lock_reclaimed", extra={"holder": current.holder})
                session.delete(current)
                session.flush()
            session.add(BackupLock(name=self.name, holder=holder, acquired_at=now, expires_at=now + timedelta(seconds=ttl_seconds)))
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConcurrentImportRejection("Another import is already running; retry once it finishes") from exc
        except SQLAlchemyError:
            session.rollback()
            raise

    def release(self, session: Session, holder: str) -> None:
        try:
            session.execute(delete(BackupLock).where(BackupLock.name == self.name, BackupLock.holder == holder))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("backup.lock_release_failed", extra={"holder": holder})

    def status(self, session: Session) -> dict[str, object]:
        current = session.get(BackupLock, self.name)
        if current is None or _aware(current.expires_at) <= utcnow():
            return {"locked": False}
        return {
            "locked": True,
            "holder": current.holder,
            "acquired_at": _aware(current.acquired_at).isoformat(),
            "expires_at": _aware(current.expires_at).isoformat(),
        }


import_lock = ImportLock()
