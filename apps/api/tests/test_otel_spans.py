from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from signature8.core.config import get_settings
from signature8.core.database import Base, get_db
from signature8.core.rbac import permissions_for_role
from signature8.crm.api import get_current_user as crm_get_current_user
from signature8.crm.service import ActorUser
from signature8.main import app
from signature8.middleware.rate_limit import reset_rate_limiter
from signature8.otel import crm_route_group, setup_inmemory_otel


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            role="Admin",
            permissions=permissions_for_role("Admin"),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"nom": "OTel Lead", "telephone": "0640000000"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_mirror_sweep_runs_in_its_own_span(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/crm/leads", json={"nom": "OTel Lead", "telephone": "0640000001"}).json()
    contact = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).json()
    created = client.post(f"/api/crm/contacts/{contact['id']}/opportunities", json={"type": "riad"})
    assert created.status_code == 201
    span_exporter.clear()

    response = client.post("/api/crm/clients/reconcile", headers={"X-Correlation-Id": "otel-sweep-1"})
    assert response.status_code == 200
    assert response.json()["unchanged"] == 1

    spans = span_exporter.get_finished_spans()
    sweep_spans = [span for span in spans if span.name == "crm.mirror_sweep"]
    assert len(sweep_spans) == 1
    assert sweep_spans[0].attributes.get("crm.mirror.processed") == 1
    assert sweep_spans[0].attributes.get("crm.mirror.unchanged") == 1
    request_spans = [span for span in spans if span.attributes.get("correlation_id") == "otel-sweep-1"]
    assert request_spans
    assert sweep_spans[0].context.trace_id == request_spans[0].context.trace_id


def test_units_of_work_get_crm_spans(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"nom": "OTel Lead", "telephone": "0640000002"},
        headers={"X-Correlation-Id": "otel-unit-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    units = [span for span in spans if span.name == "crm.unit_of_work"]
    lead_units = [span for span in units if span.attributes.get("crm.operation") == "lead_create"]
    assert len(lead_units) == 1
    assert lead_units[0].attributes.get("correlation_id") == "otel-unit-1"
    assert any(span.attributes.get("crm.route_group") == "leads" for span in spans)
    assert lead_units[0].resource.attributes.get("service.namespace") == "signature8"


@pytest.mark.parametrize(
    ("path", "group"),
    [
        ("/api/crm/clients/abc/payments", "clients"),
        ("/api/crm/leads", "leads"),
        ("/api/crm/", None),
        ("/health", None),
    ],
)
def test_crm_route_group(path: str, group: str | None) -> None:
    assert crm_route_group(path) == group
