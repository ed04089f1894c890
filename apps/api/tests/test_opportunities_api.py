from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from signature8 import events
from signature8.core.config import get_settings
from signature8.core.database import Base, get_db
from signature8.core.rbac import permissions_for_role
from signature8.crm.api import get_current_user
from signature8.crm.models import CRMClient, CRMClientStageHistory, CRMHistorique, CRMPayment
from signature8.crm.service import ActorUser
from signature8.main import app
from signature8.middleware.rate_limit import reset_rate_limiter


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
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def role() -> dict[str, str]:
    return {"current": "Admin"}


@pytest.fixture()
def client(db_session: Session, role: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=f"{role['current'].lower()}-1",
            role=role["current"],
            permissions=permissions_for_role(role["current"]),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_contact(client: TestClient, telephone: str = "0661000001") -> dict:
    lead = client.post(
        "/api/crm/leads",
        json={"nom": "Mehdi Berrada", "telephone": telephone, "ville": "Tanger"},
    )
    assert lead.status_code == 201
    contact = client.post(f"/api/crm/leads/{lead.json()['id']}/convert", json={})
    assert contact.status_code == 200
    return contact.json()


def _create_opportunity(client: TestClient, contact_id: str, **overrides: object) -> dict:
    payload: dict[str, object] = {"type": "appartement"}
    payload.update(overrides)
    response = client.post(f"/api/crm/contacts/{contact_id}/opportunities", json=payload)
    assert response.status_code == 201
    return response.json()


def _mirror(db_session: Session, contact_id: str, opportunity_id: str) -> CRMClient | None:
    db_session.expire_all()
    return db_session.get(CRMClient, f"{contact_id}-{opportunity_id}")


def test_create_applies_defaults_and_mirrors_client(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)

    opportunity = _create_opportunity(client, contact["id"], titre="  ", budget=850000)

    assert opportunity["titre"] == "Appartement - Tanger"
    assert opportunity["pipeline_stage"] == "projet_accepte"
    assert opportunity["statut"] == "open"

    mirror = _mirror(db_session, contact["id"], opportunity["id"])
    assert mirror is not None
    assert mirror.statut_projet.value == "acompte_recu"
    assert mirror.titre == "Appartement - Tanger"
    assert float(mirror.budget) == 850000
    intervals = list(db_session.scalars(select(CRMClientStageHistory).where(CRMClientStageHistory.client_id == mirror.id)))
    assert [(item.stage_name, item.ended_at) for item in intervals] == [("acompte_recu", None)]

    timeline = client.get(f"/api/crm/contacts/{contact['id']}/timeline").json()
    assert "opportunity_created" in {item["event_type"] for item in timeline}
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "converted"


def test_create_requires_contact_and_type(client: TestClient) -> None:
    no_contact = client.post("/api/crm/opportunities", json={"type": "villa"})
    assert no_contact.status_code == 422
    assert no_contact.json()["code"] == "crm_opportunity_create_failed"

    contact = _create_contact(client)
    no_type = client.post("/api/crm/opportunities", json={"contact_id": contact["id"]})
    assert no_type.status_code == 422

    unknown_contact = client.post("/api/crm/opportunities", json={"contact_id": str(uuid.uuid4()), "type": "villa"})
    assert unknown_contact.status_code == 404


def test_reaching_deposit_stage_promotes_contact_and_losing_it_reverts(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])

    deposit = client.patch(f"/api/crm/opportunities/{opportunity['id']}", json={"pipeline_stage": "acompte_recu"})
    assert deposit.status_code == 200
    promoted = client.get(f"/api/crm/contacts/{contact['id']}").json()
    assert promoted["tag"] == "client"
    assert promoted["client_since"] is not None

    lost = client.patch(f"/api/crm/opportunities/{opportunity['id']}", json={"pipeline_stage": "perdue"})
    assert lost.status_code == 200
    assert lost.json()["lost_at"] is not None

    reverted = client.get(f"/api/crm/contacts/{contact['id']}").json()
    assert reverted["tag"] == "converted"
    assert reverted["client_since"] == promoted["client_since"]

    mirror = _mirror(db_session, contact["id"], opportunity["id"])
    assert mirror.statut_projet.value == "refuse"

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]
    assert [(item["payload"]["from_stage"], item["payload"]["to_stage"]) for item in stage_events] == [
        ("projet_accepte", "acompte_recu"),
        ("acompte_recu", "perdue"),
    ]


def test_second_active_deposit_keeps_client_tag(client: TestClient) -> None:
    contact = _create_contact(client)
    first = _create_opportunity(client, contact["id"], pipeline_stage="acompte_recu")
    _create_opportunity(client, contact["id"], type="villa", pipeline_stage="acompte_recu")

    client.patch(f"/api/crm/opportunities/{first['id']}", json={"statut": "lost"})

    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "client"


def test_first_win_stamps_won_at_once(client: TestClient) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])

    won = client.patch(f"/api/crm/opportunities/{opportunity['id']}", json={"statut": "won"}).json()
    assert won["won_at"] is not None
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "client"

    reopened = client.patch(f"/api/crm/opportunities/{opportunity['id']}", json={"statut": "open"}).json()
    assert reopened["won_at"] == won["won_at"]
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "client"


def test_patch_without_changes_writes_nothing(client: TestClient) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])
    events.published_events.clear()

    response = client.patch(f"/api/crm/opportunities/{opportunity['id']}", json={"pipeline_stage": "projet_accepte"})

    assert response.status_code == 200
    assert not [item for item in events.published_events if item["event_type"].startswith("crm.opportunity.")]
    assert len(client.get(f"/api/crm/contacts/{contact['id']}/timeline").json()) == 2


def test_deposit_endpoint_requires_amount_and_method(client: TestClient) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])

    missing = client.post(f"/api/crm/opportunities/{opportunity['id']}/acompte-recu", json={"montant": 1000})

    assert missing.status_code == 400
    assert missing.json()["code"] == "crm_opportunity_deposit_failed"


def test_deposit_endpoint_moves_opportunity_and_records_payment(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])

    response = client.post(
        f"/api/crm/opportunities/{opportunity['id']}/acompte-recu",
        json={"montant": 20000, "methode": "virement", "reference": "VIR-001"},
    )

    assert response.status_code == 200
    assert response.json()["pipeline_stage"] == "acompte_recu"
    updated_contact = client.get(f"/api/crm/contacts/{contact['id']}").json()
    assert updated_contact["status"] == "acompte_recu"
    assert updated_contact["tag"] == "client"

    client_id = f"{contact['id']}-{opportunity['id']}"
    payments = list(db_session.scalars(select(CRMPayment).where(CRMPayment.client_id == client_id)))
    assert len(payments) == 1
    assert float(payments[0].montant) == 20000
    assert payments[0].reference == "VIR-001"
    assert payments[0].type == "accompte"
    historique = db_session.scalars(select(CRMHistorique).where(CRMHistorique.client_id == client_id))
    entries = [(item.type, item.description) for item in historique]
    assert ("acompte", "Acompte reçu: 20000.0 MAD (virement) - Réf: VIR-001") in entries
    assert all(kind != "paiement" for kind, _ in entries)

    recorded = [item for item in events.published_events if item["event_type"] == "crm.payment.recorded"]
    assert recorded[-1]["payload"]["client_id"] == client_id
    assert recorded[-1]["payload"]["nom"] == "Mehdi Berrada"


def test_delete_removes_mirror_and_recomputes_tag(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"], pipeline_stage="acompte_recu")
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "client"

    response = client.delete(f"/api/crm/opportunities/{opportunity['id']}")

    assert response.status_code == 204
    assert _mirror(db_session, contact["id"], opportunity["id"]) is None
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["tag"] == "converted"
    assert client.get(f"/api/crm/opportunities/{opportunity['id']}").status_code == 404


def test_role_permissions_gate_opportunity_routes(client: TestClient, role: dict[str, str]) -> None:
    contact = _create_contact(client)
    opportunity = _create_opportunity(client, contact["id"])

    role["current"] = "Gestionnaire"
    assert client.delete(f"/api/crm/opportunities/{opportunity['id']}").status_code == 403

    role["current"] = "Commercial"
    forbidden = client.get("/api/crm/opportunities")
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "crm_opportunity_list_failed"

    role["current"] = "Architect"
    assert client.get(f"/api/crm/opportunities/{opportunity['id']}").status_code == 404
