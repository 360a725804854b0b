from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from backup_samples import clients_backup, confirmed
from minicrm.backup.confirmation import reset_used_tokens
from minicrm.core.auth import AuthUser, get_current_user
from minicrm.core.config import get_settings
from minicrm.core.database import Base, get_db
from minicrm.main import app
from minicrm.middleware.rate_limit import reset_rate_limiter
from minicrm.otel import setup_inmemory_otel


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
def setup_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("BACKUP_LOCK_FILE", str(tmp_path / "IMPORT_LOCK"))
    monkeypatch.setenv("BACKUP_VERIFY_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_used_tokens()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_used_tokens()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(
        sub="user-1",
        roles=["admin"],
        permissions={"backup.export", "backup.import"},
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/backup/status", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("backup.operation") == "status" for span in spans)


def test_import_emits_one_span_per_stage(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/backup/import",
        json=confirmed(clients_backup(2)),
        headers={"X-Correlation-Id": "otel-import-1"},
    )
    assert response.status_code == 200

    stage_spans = {
        span.attributes.get("backup.stage"): span
        for span in span_exporter.get_finished_spans()
        if span.name.startswith("backup.import.")
    }
    assert set(stage_spans) == {"GUARD", "CONFIRM", "PARSE", "LOSS_CHECK", "SNAPSHOT", "REPLACE", "VERIFY"}
    assert stage_spans["REPLACE"].name == "backup.import.replace"
    assert all(span.status.status_code != StatusCode.ERROR for span in stage_spans.values())


def test_failed_stage_span_is_marked_as_error(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/backup/import", json={"version": "2.4", "confirmDelete": True})
    assert response.status_code == 400

    confirm_spans = [span for span in span_exporter.get_finished_spans() if span.name == "backup.import.confirm"]
    assert confirm_spans
    assert confirm_spans[-1].status.status_code == StatusCode.ERROR
    assert not [span for span in span_exporter.get_finished_spans() if span.name == "backup.import.parse"]


def test_export_span_records_total(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/backup/export")
    assert response.status_code == 200

    export_spans = [span for span in span_exporter.get_finished_spans() if span.name == "backup.export"]
    assert export_spans
    assert export_spans[-1].attributes.get("backup.records") == 0
