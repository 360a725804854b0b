from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.backup.entities import (
    ACTIVITIES,
    ACTIVITY_LISTS,
    ENTITIES,
    EXPENSES,
    INCOMES,
    LEGACY_SECTIONS,
    MONTHLY_PAYMENTS,
    USERS,
)
from minicrm.backup.errors import SnapshotFormatError
from minicrm.core.config import get_settings
from minicrm.store import DocumentStore, StoredDocument, document_store

logger = logging.getLogger("minicrm.backup")


@dataclass(slots=True)
class FormattedSnapshot:
    document: dict[str, Any]
    counts: dict[str, int] = field(default_factory=dict)


def _payments_by_month(documents: list[StoredDocument]) -> dict[str, dict[str, Any]]:
    months: dict[str, dict[str, Any]] = defaultdict(dict)
    for document in documents:
        body = dict(document.body or {})
        month = str(body.pop("mes", "") or document.business_key.split(":", 1)[0])
        client_key = str(body.pop("crmClientId", "") or document.business_key.split(":", 1)[-1])
        months[month][client_key] = body
    return dict(months)


def _entries_by_period(documents: list[StoredDocument]) -> dict[str, list[dict[str, Any]]]:
    periods: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for document in documents:
        body = dict(document.body or {})
        periods[str(body.pop("periodo", "") or "sin-periodo")].append(body)
    return dict(periods)


def _with_internal_id(document: StoredDocument) -> dict[str, Any]:
    return {**(document.body or {}), "_id": str(document.id)}


@dataclass(slots=True)
class SnapshotFormatter:
    """Serializes the whole store into one backup document.

    Used by export and by the safety snapshot taken before an import deletes
    anything. Read-only; any failed read aborts the whole document.
    """

    store: DocumentStore = field(default_factory=lambda: document_store)

    def format(self, session: Session, *, now: datetime | None = None) -> FormattedSnapshot:
        settings = get_settings()
        try:
            collections = {entity.collection: self.store.list_documents(session, entity.collection) for entity in ENTITIES}
        except SQLAlchemyError as exc:
            logger.error("backup.snapshot_read_failed", extra={"error": str(exc)})
            raise SnapshotFormatError(f"failed to read collections: {exc}") from exc

        list_keys = {str(document.id): document.business_key for document in collections[ACTIVITY_LISTS.collection]}

        document: dict[str, Any] = {
            "version": settings.backup_format_version,
            "fechaExportacion": (now or datetime.now(timezone.utc)).isoformat(),
        }
        for entity in ENTITIES:
            items = collections[entity.collection]
            if entity is MONTHLY_PAYMENTS:
                document[entity.section] = _payments_by_month(items)
            elif entity in (EXPENSES, INCOMES):
                document[entity.section] = _entries_by_period(items)
            elif entity in (USERS, ACTIVITY_LISTS):
                document[entity.section] = [_with_internal_id(item) for item in items]
            elif entity is ACTIVITIES:
                activities = []
                for item in items:
                    body = _with_internal_id(item)
                    list_ref = body.get("list")
                    body["list"] = list_keys.get(str(list_ref), list_ref)
                    activities.append(body)
                document[entity.section] = activities
            else:
                document[entity.section] = [dict(item.body or {}) for item in items]
        for legacy in sorted(LEGACY_SECTIONS):
            document[legacy] = []

        return FormattedSnapshot(
            document=document,
            counts={collection: len(items) for collection, items in collections.items()},
        )


snapshot_formatter = SnapshotFormatter()
