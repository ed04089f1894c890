from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from signature8.core.config import get_settings
from signature8.core.database import Base, get_db
from signature8.core.rbac import permissions_for_role
from signature8.crm.api import get_current_user as crm_get_current_user
from signature8.crm.service import ActorUser
from signature8.main import app
from signature8.middleware.rate_limit import _resolve_route_group, reset_rate_limiter


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
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            role="Operator",
            permissions=permissions_for_role("Operator"),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = []
    for index in range(5):
        response = client.post(
            "/api/crm/leads",
            json={"nom": f"Lead {index}", "telephone": f"060000000{index}"},
        )
        responses.append(response)

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "crm_rate_limited"
    assert body["message"] == "Trop de requêtes, réessayez plus tard"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        created = client.post("/api/crm/leads", json={"nom": f"Lead {index}", "telephone": f"061000000{index}"})
        assert created.status_code == 201
    assert client.post("/api/crm/leads", json={"nom": "Lead 3", "telephone": "0610000003"}).status_code == 429

    user = client.post("/api/crm/users", json={"name": "Karim Architecte", "role": "Architect"})
    assert user.status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/crm/leads", json={"nom": "Readable Lead", "telephone": "0620000000"})
    assert create.status_code == 201

    responses = [client.get("/api/crm/leads") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


@pytest.mark.parametrize(
    ("path", "group"),
    [
        ("/api/crm/leads/abc/convert", "leads"),
        ("/api/crm/clients/abc/stage", "clients"),
        ("/api/crm/clients/abc/payments", "payments"),
        ("/api/crm/clients/abc/devis/def", "devis"),
        ("/api/crm", "crm"),
    ],
)
def test_client_sub_resources_get_their_own_group(path: str, group: str) -> None:
    assert _resolve_route_group(path) == group
