from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.backup.entities import ACTIVITY_LISTS, ENTITIES, USERS, EntityKind
from minicrm.backup.errors import ReplacePartialFailure
from minicrm.backup.schemas import ActivityListRecord, ActivityRecord, BackupRecord, PreparedBackup, UserRecord
from minicrm.store import DocumentStore, document_store, normalize_email

logger = logging.getLogger("minicrm.backup")


class UnresolvedReference(LookupError):
    pass


@dataclass(slots=True)
class EntityOutcome:
    collection: str
    label: str
    before: int
    prepared: int
    deleted: int = 0
    written_keys: set[str] = field(default_factory=set)
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return len(self.written_keys)

    @property
    def nothing_written(self) -> bool:
        return self.prepared > 0 and self.written == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity": self.collection,
            "before": self.before,
            "deleted": self.deleted,
            "prepared": self.prepared,
            "written": self.written,
            "failed": self.failed,
        }


@dataclass(slots=True)
class ReplaceResult:
    outcomes: dict[str, EntityOutcome] = field(default_factory=dict)

    def written_counts(self) -> dict[str, int]:
        return {collection: outcome.written for collection, outcome in self.outcomes.items()}

    def failed_total(self) -> int:
        return sum(outcome.failed for outcome in self.outcomes.values())

    def as_details(self) -> list[dict[str, Any]]:
        return [outcome.as_dict() for outcome in self.outcomes.values()]


@dataclass(slots=True)
class ReplaceExecutor:
    """Delete-then-repopulate per entity, in dependency order.

    Entities without prepared records are never touched. Users are merged by
    e-mail instead of deleted. Every write commits on its own; nothing is
    rolled back when a later entity fails.
    """

    store: DocumentStore = field(default_factory=lambda: document_store)

    def replace(
        self,
        session: Session,
        prepared: PreparedBackup,
        *,
        on_delete: Callable[[EntityOutcome], None] | None = None,
    ) -> ReplaceResult:
        result = ReplaceResult()
        user_ids = {
            normalize_email((document.body or {}).get("email")): str(document.id)
            for document in self.store.list_documents(session, USERS.collection)
        }
        list_ids: dict[str, str] = {}

        for entity in ENTITIES:
            records = prepared.records.get(entity.collection) or []
            if not records:
                continue
            outcome = EntityOutcome(
                collection=entity.collection,
                label=entity.label,
                before=self.store.count(session, entity.collection),
                prepared=len(records),
            )
            result.outcomes[entity.collection] = outcome

            if entity.replaceable:
                try:
                    outcome.deleted = self.store.delete_all(session, entity.collection)
                except SQLAlchemyError as exc:
                    logger.error("backup.delete_failed", extra={"entity": entity.collection, "error": str(exc)})
                    raise ReplacePartialFailure(
                        f"Failed to clear {entity.label} records",
                        details={"entity": entity.collection, "outcomes": result.as_details()},
                    ) from exc
                logger.info("backup.collection_deleted", extra={"entity": entity.collection, "count": outcome.deleted})
                if on_delete is not None:
                    on_delete(outcome)

            for record in records:
                self._write(session, entity, record, outcome, user_ids, list_ids)

            logger.info(
                "backup.collection_written",
                extra={
                    "entity": entity.collection,
                    "count": outcome.written,
                    "failed": outcome.failed,
                    "before": outcome.before,
                },
            )
            if outcome.nothing_written:
                raise ReplacePartialFailure(
                    f"None of the {outcome.prepared} {entity.label} records could be written",
                    details={"entity": entity.collection, "outcomes": result.as_details(), "errors": outcome.errors[:20]},
                )
        return result

    def _write(
        self,
        session: Session,
        entity: EntityKind,
        record: BackupRecord,
        outcome: EntityOutcome,
        user_ids: dict[str, str],
        list_ids: dict[str, str],
    ) -> None:
        key = record.business_key
        try:
            if isinstance(record, UserRecord):
                document = self.store.merge_user(session, key, record.to_document())
                user_ids[record.email] = str(document.id)
            else:
                body = self._body_for(session, record, user_ids, list_ids)
                document = self.store.upsert(session, entity.collection, key, body)
                if isinstance(record, ActivityListRecord):
                    list_ids[key] = str(document.id)
        except (SQLAlchemyError, UnresolvedReference) as exc:
            outcome.failed += 1
            outcome.errors.append(f"{key}: {exc}")
            logger.warning(
                "backup.record_write_failed",
                extra={"entity": entity.collection, "business_key": key, "error": str(exc)},
            )
            return
        outcome.written_keys.add(key)

    def _body_for(
        self,
        session: Session,
        record: BackupRecord,
        user_ids: dict[str, str],
        list_ids: dict[str, str],
    ) -> dict[str, Any]:
        body = record.to_document()
        if isinstance(record, ActivityListRecord):
            body["owner"] = _user_id(user_ids, record.owner)
            body["members"] = [user_ids[member] for member in record.members if member in user_ids]
        elif isinstance(record, ActivityRecord):
            body["list"] = self._list_id(session, list_ids, record.list_key)
            body["createdBy"] = _user_id(user_ids, record.created_by)
            body["assignee"] = user_ids.get(record.assignee) if record.assignee else None
        return body

    def _list_id(self, session: Session, list_ids: dict[str, str], key: str) -> str:
        if key in list_ids:
            return list_ids[key]
        document = self.store.get_by_key(session, ACTIVITY_LISTS.collection, key)
        if document is None:
            raise UnresolvedReference(f"activity list '{key}' does not exist")
        list_ids[key] = str(document.id)
        return list_ids[key]


def _user_id(user_ids: dict[str, str], email: str) -> str:
    if email not in user_ids:
        raise UnresolvedReference(f"user '{email}' does not exist")
    return user_ids[email]


replace_executor = ReplaceExecutor()
