from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from minicrm.core.auth import AuthUser, get_current_user
from minicrm.core.config import get_settings
from minicrm.core.database import Base, get_db
from minicrm.main import app
from minicrm.middleware.rate_limit import reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_BACKUP_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


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


def _bearer(subject: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": subject}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_backup_import_is_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/backup/import", json={"version": "2.4"}) for _ in range(5)]

    assert [response.status_code for response in responses[:3]] == [400, 400, 400]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["success"] is False
    assert body["code"] == "RATE_LIMITED"
    assert body["error"] == "Too many backup requests"
    assert body["details"]["retry_after"] >= 1
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/api/backup/export") for _ in range(6)]
    responses += [client.get("/api/backup/status") for _ in range(6)]
    assert all(response.status_code == 200 for response in responses)


def test_buckets_are_per_user(client: TestClient) -> None:
    for _ in range(3):
        client.post("/api/backup/import", json={"version": "2.4"}, headers=_bearer("user-a"))

    exhausted = client.post("/api/backup/import", json={"version": "2.4"}, headers=_bearer("user-a"))
    other = client.post("/api/backup/import", json={"version": "2.4"}, headers=_bearer("user-b"))

    assert exhausted.status_code == 429
    assert other.status_code == 400


def test_disabled_rate_limiter_lets_everything_through(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    responses = [client.post("/api/backup/import", json={"version": "2.4"}) for _ in range(6)]
    assert all(response.status_code == 400 for response in responses)
