from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy.orm import Session

from minicrm.backup import normalizers as norm
from minicrm.backup.entities import (
    ACTIVITIES,
    ACTIVITY_LISTS,
    BUDGETS,
    CLIENTS,
    ENTITIES,
    EXPENSES,
    INCOMES,
    LEGACY_SECTIONS,
    MEETINGS,
    MONTHLY_PAYMENTS,
    REPORTS,
    TASKS,
    TEAM_MEMBERS,
    USERS,
    EntityKind,
    expected_sections,
    version_tuple,
)
from minicrm.backup.errors import ParseFailure, ValidationEmpty
from minicrm.backup.references import ReferenceIndex
from minicrm.backup.schemas import ActivityListRecord, BackupRecord, PreparedBackup
from minicrm.core.config import get_settings
from minicrm.store import DocumentStore, document_store

logger = logging.getLogger("minicrm.backup")

DEFAULT_LIST_NAME = "General"


@dataclass(frozen=True, slots=True)
class UndecodableBody:
    """Stands in for a request body that is not JSON at all."""

    reason: str
    position: int | None = None


def decode_body(raw: bytes) -> Any:
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        return UndecodableBody(exc.msg, exc.pos)
    except UnicodeDecodeError as exc:
        return UndecodableBody("body is not UTF-8 text", exc.start)


def decode_section(entity: EntityKind, raw: Any) -> Any:
    """Return the section in its structural shape, empty when absent."""
    empty: Any = [] if entity.shape == "list" else {}
    if raw is None:
        return empty
    try:
        value = norm.unwrap_encoded(raw)
    except json.JSONDecodeError as exc:
        raise ParseFailure(
            f"section '{entity.section}' is not valid JSON",
            details={"section": entity.section, "position": exc.pos},
        ) from exc
    if value is None:
        return empty
    if entity.shape == "list":
        if isinstance(value, dict) and not value:
            return []
        if not isinstance(value, list):
            raise ParseFailure(
                f"section '{entity.section}' must be a list",
                details={"section": entity.section, "found": type(value).__name__},
            )
        return value
    if isinstance(value, list) and not value:
        return {}
    if not isinstance(value, dict):
        raise ParseFailure(
            f"section '{entity.section}' must be an object keyed by period",
            details={"section": entity.section, "found": type(value).__name__},
        )
    return value


class _Preparation:
    """Mutable state of a single parse run."""

    def __init__(self, prepared: PreparedBackup) -> None:
        self.prepared = prepared
        self.keys: dict[str, dict[str, int]] = {}

    def keep(self, entity: EntityKind, record: BackupRecord) -> None:
        items = self.prepared.records.setdefault(entity.collection, [])
        seen = self.keys.setdefault(entity.collection, {})
        key = record.business_key
        if key in seen:
            items[seen[key]] = record
            message = f"{entity.label} '{key}' appears more than once; last occurrence kept"
            self.prepared.warnings.append(message)
            logger.warning("backup.duplicate_key", extra={"entity": entity.collection, "business_key": key})
            return
        seen[key] = len(items)
        items.append(record)

    def drop(self, entity: EntityKind, position: str, reason: str) -> None:
        self.prepared.dropped[entity.collection] = self.prepared.dropped.get(entity.collection, 0) + 1
        logger.warning(
            "backup.record_dropped",
            extra={"entity": entity.collection, "position": position, "reason": reason},
        )

    def attempt(self, entity: EntityKind, position: str, build: Callable[[], BackupRecord]) -> BackupRecord | None:
        try:
            record = build()
        except norm.RecordRejected as exc:
            self.drop(entity, position, str(exc))
            return None
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            self.drop(entity, position, f"invalid field {'.'.join(str(p) for p in first.get('loc', ()))}: {first.get('msg', 'invalid')}")
            return None
        except (TypeError, AttributeError) as exc:
            self.drop(entity, position, f"malformed record: {exc}")
            return None
        self.keep(entity, record)
        return record


@dataclass(slots=True)
class BackupParser:
    store: DocumentStore = field(default_factory=lambda: document_store)

    def parse(self, session: Session, payload: Any, *, now: datetime | None = None) -> PreparedBackup:
        """Turn a raw backup document into validated records per collection.

        Reads the store only to resolve user and activity-list references; never writes.
        """
        if not isinstance(payload, dict):
            raise ParseFailure("backup document must be a JSON object", details={"found": type(payload).__name__})

        settings = get_settings()
        tz: tzinfo = ZoneInfo(settings.backup_timezone)
        now = now or datetime.now(timezone.utc)
        version = norm.clean_str(payload.get("version")) or "1.0"
        prepared = PreparedBackup(version=version, records={entity.collection: [] for entity in ENTITIES})
        state = _Preparation(prepared)

        if version_tuple(version) > version_tuple(settings.backup_format_version):
            prepared.warnings.append(f"backup version {version} is newer than {settings.backup_format_version}")
        for section in expected_sections(version):
            if section not in payload:
                prepared.warnings.append(f"section '{section}' expected for version {version} is missing")

        sections = {entity.collection: decode_section(entity, payload.get(entity.section)) for entity in ENTITIES}
        for legacy in LEGACY_SECTIONS:
            if payload.get(legacy):
                logger.info("backup.legacy_section_ignored", extra={"section": legacy})

        users = self._prepare_users(session, state, sections[USERS.collection], tz, now)
        self._prepare_lists(state, CLIENTS, sections[CLIENTS.collection], lambda raw: norm.normalize_client(raw, tz))
        self._prepare_payments(state, sections[MONTHLY_PAYMENTS.collection], tz)
        for entity in (EXPENSES, INCOMES):
            self._prepare_periods(state, entity, sections[entity.collection], tz, now)
        self._prepare_budgets(state, sections[BUDGETS.collection], tz, now)
        self._prepare_lists(state, MEETINGS, sections[MEETINGS.collection], lambda raw: norm.normalize_meeting(raw, tz))
        self._prepare_lists(state, TASKS, sections[TASKS.collection], lambda raw: norm.normalize_task(raw, tz))
        self._prepare_lists(
            state, TEAM_MEMBERS, sections[TEAM_MEMBERS.collection], lambda raw: norm.normalize_team_member(raw, tz, now)
        )
        lists = self._prepare_activity_lists(session, state, sections[ACTIVITY_LISTS.collection], users)
        self._prepare_activities(session, state, sections[ACTIVITIES.collection], tz, users, lists)
        self._prepare_lists(state, REPORTS, sections[REPORTS.collection], lambda raw: norm.normalize_report(raw, tz))

        if prepared.total_records() == 0:
            raise ValidationEmpty(
                "backup contains no usable records",
                details={"dropped": prepared.dropped, "version": version},
            )

        logger.info(
            "backup.parsed",
            extra={
                "version": version,
                "count": prepared.total_records(),
                "dropped": prepared.total_dropped(),
                "warnings": len(prepared.warnings),
            },
        )
        return prepared

    def _prepare_lists(
        self,
        state: _Preparation,
        entity: EntityKind,
        items: list[Any],
        build: Callable[[dict[str, Any]], BackupRecord],
    ) -> None:
        for index, raw in enumerate(items):
            position = f"{entity.section}[{index}]"
            raw = norm.unwrap_field(raw)
            if not isinstance(raw, dict):
                state.drop(entity, position, "record is not an object")
                continue
            state.attempt(entity, position, lambda raw=raw: build(raw))

    def _prepare_payments(self, state: _Preparation, months: dict[str, Any], tz: tzinfo) -> None:
        for month, by_client in months.items():
            by_client = norm.unwrap_field(by_client)
            if not isinstance(by_client, dict):
                state.drop(MONTHLY_PAYMENTS, f"pagosMensuales.{month}", "month entry is not an object")
                continue
            for client_key, raw in by_client.items():
                state.attempt(
                    MONTHLY_PAYMENTS,
                    f"pagosMensuales.{month}.{client_key}",
                    lambda month=month, client_key=client_key, raw=raw: norm.normalize_monthly_payment(
                        month, client_key, raw, tz
                    ),
                )

    def _prepare_periods(
        self, state: _Preparation, entity: EntityKind, periods: dict[str, Any], tz: tzinfo, now: datetime
    ) -> None:
        for period, entries in periods.items():
            entries = norm.unwrap_field(entries)
            if not isinstance(entries, list):
                state.drop(entity, f"{entity.section}.{period}", "period entry is not a list")
                continue
            for index, raw in enumerate(entries):
                position = f"{entity.section}.{period}[{index}]"
                if not isinstance(raw, dict):
                    state.drop(entity, position, "record is not an object")
                    continue
                state.attempt(
                    entity,
                    position,
                    lambda period=period, raw=raw: norm.normalize_ledger_entry(entity.key_prefix, period, raw, tz, now),
                )

    def _prepare_budgets(self, state: _Preparation, items: list[Any], tz: tzinfo, now: datetime) -> None:
        highest = max(
            (norm.parse_int(item.get("numero")) or 0 for item in items if isinstance(item, dict)),
            default=0,
        )
        counter = [highest]

        def next_number() -> int:
            counter[0] += 1
            return counter[0]

        self._prepare_lists(state, BUDGETS, items, lambda raw: norm.normalize_budget(raw, tz, now, next_number))

    def _prepare_users(
        self, session: Session, state: _Preparation, items: list[Any], tz: tzinfo, now: datetime
    ) -> ReferenceIndex:
        self._prepare_lists(state, USERS, items, lambda raw: norm.normalize_user(raw, tz, now))
        index = ReferenceIndex()
        for record in state.prepared.records[USERS.collection]:
            index.add(
                record.email,
                internal_ids=[record.source_id],
                business_key=record.crm_id,
                email=record.email,
                name=record.nombre,
            )
        for document in self.store.list_documents(session, USERS.collection):
            body = document.body or {}
            email = norm.clean_str(body.get("email"))
            if email is None:
                continue
            email = email.lower()
            index.add(
                email,
                internal_ids=[str(document.id)],
                business_key=document.business_key,
                email=email,
                name=norm.clean_str(body.get("nombre")),
            )
        return index

    def _prepare_activity_lists(
        self, session: Session, state: _Preparation, items: list[Any], users: ReferenceIndex
    ) -> ReferenceIndex:
        index = ReferenceIndex()
        for position, raw in enumerate(items):
            raw = norm.unwrap_field(raw)
            if not isinstance(raw, dict):
                state.drop(ACTIVITY_LISTS, f"activityLists[{position}]", "record is not an object")
                continue
            record = state.attempt(
                ACTIVITY_LISTS, f"activityLists[{position}]", lambda raw=raw: norm.normalize_activity_list(raw, users)
            )
            if record is None:
                continue
            index.add(
                record.list_id,
                internal_ids=[norm.clean_str(raw.get("_id")), record.list_id],
                business_key=record.list_id,
                name=record.name,
            )
        if not state.prepared.records[ACTIVITY_LISTS.collection]:
            # Lists stay untouched by this import, so activities may point at the stored ones.
            for document in self.store.list_documents(session, ACTIVITY_LISTS.collection):
                index.add(
                    document.business_key,
                    internal_ids=[str(document.id)],
                    business_key=document.business_key,
                    name=norm.clean_str((document.body or {}).get("name")),
                )
        return index

    def _prepare_activities(
        self,
        session: Session,
        state: _Preparation,
        items: list[Any],
        tz: tzinfo,
        users: ReferenceIndex,
        lists: ReferenceIndex,
    ) -> None:
        prepared_lists = state.prepared.records[ACTIVITY_LISTS.collection]
        stored_keys: list[str] = []
        if not prepared_lists:
            stored_keys = [doc.business_key for doc in self.store.list_documents(session, ACTIVITY_LISTS.collection)]

        def fallback_list(activity_id: str, creator: str) -> str:
            if prepared_lists:
                key = prepared_lists[0].business_key
            elif stored_keys:
                key = stored_keys[0]
            else:
                record = ActivityListRecord(
                    list_id=norm.mint_key(ACTIVITY_LISTS.key_prefix, DEFAULT_LIST_NAME, creator),
                    name=DEFAULT_LIST_NAME,
                    owner=creator,
                    members=[creator],
                    synthesized=True,
                )
                state.keep(ACTIVITY_LISTS, record)
                key = record.list_id
                state.prepared.warnings.append(f"default activity list '{DEFAULT_LIST_NAME}' created for orphan activities")
            logger.warning(
                "backup.activity_list_fallback",
                extra={"entity": ACTIVITIES.collection, "business_key": activity_id, "list": key},
            )
            return key

        self._prepare_lists(
            state,
            ACTIVITIES,
            items,
            lambda raw: norm.normalize_activity(raw, tz, users, lists, fallback_list),
        )
