from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backup_samples import sample_backup
from minicrm.backup.entities import ENTITIES, LEGACY_SECTIONS
from minicrm.backup.errors import SnapshotFormatError
from minicrm.backup.executor import ReplaceExecutor
from minicrm.backup.formatter import SnapshotFormatter
from minicrm.backup.parser import BackupParser
from minicrm.core.config import get_settings
from minicrm.core.database import Base
from minicrm.store import DocumentStore, document_store


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _load_sample(session: Session) -> None:
    prepared = BackupParser().parse(session, sample_backup())
    ReplaceExecutor().replace(session, prepared)


def test_empty_store_formats_every_section(db_session: Session) -> None:
    snapshot = SnapshotFormatter().format(db_session)

    document = snapshot.document
    assert document["version"] == "2.4"
    assert "fechaExportacion" in document
    for entity in ENTITIES:
        assert entity.section in document
        assert not document[entity.section]
    for legacy in LEGACY_SECTIONS:
        assert document[legacy] == []
    assert set(snapshot.counts.values()) == {0}


def test_format_groups_periods_and_months(db_session: Session) -> None:
    _load_sample(db_session)

    document = SnapshotFormatter().format(db_session).document

    assert set(document["pagosMensuales"]["2026-02"]) == {"c-1", "c-2"}
    assert "mes" not in document["pagosMensuales"]["2026-02"]["c-1"]
    assert document["gastos"]["2026-02"][0]["crmId"] == "g-1"
    assert "periodo" not in document["gastos"]["2026-02"][0]
    assert document["ingresos"]["2026-02"][0]["monto"] == 250.5


def test_format_exports_references_the_parser_can_resolve(db_session: Session) -> None:
    _load_sample(db_session)

    document = SnapshotFormatter().format(db_session).document
    users = {user["email"]: user for user in document["usuarios"]}
    lists = {item["id"]: item for item in document["activityLists"]}
    activities = {item["id"]: item for item in document["activities"]}

    assert lists["list-ventas"]["owner"] == users["owner@example.com"]["_id"]
    assert activities["act-1"]["list"] == "list-ventas"
    assert activities["act-1"]["createdBy"] == users["owner@example.com"]["_id"]
    assert activities["act-1"]["assignee"] == users["member@example.com"]["_id"]


def test_parse_of_format_preserves_keys_and_required_fields(db_session: Session) -> None:
    _load_sample(db_session)
    stored: dict[str, set[str]] = {
        entity.collection: {doc.business_key for doc in document_store.list_documents(db_session, entity.collection)}
        for entity in ENTITIES
    }

    document = SnapshotFormatter().format(db_session).document
    prepared = BackupParser().parse(db_session, document)

    assert prepared.total_dropped() == 0
    for entity in ENTITIES:
        assert {record.business_key for record in prepared.records[entity.collection]} == stored[entity.collection]
    clients = {record.business_key: record for record in prepared.records["clients"]}
    assert clients["c-1"].nombre == "Panaderia Sol"
    assert clients["c-1"].servicios[0].nombre == "Web"
    meeting = prepared.records["meetings"][0]
    assert meeting.hora == "10:00"
    assert prepared.records["activities"][0].created_by in {"owner@example.com", "member@example.com"}


def test_any_read_failure_aborts_formatting(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    _load_sample(db_session)
    original = DocumentStore.list_documents

    def flaky(self: DocumentStore, session: Session, collection: str) -> Any:
        if collection == "tasks":
            raise OperationalError("SELECT", {}, Exception("connection reset"))
        return original(self, session, collection)

    monkeypatch.setattr(DocumentStore, "list_documents", flaky)

    with pytest.raises(SnapshotFormatError):
        SnapshotFormatter().format(db_session)
