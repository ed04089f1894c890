from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from signature8 import tasks
from signature8.core.config import get_settings
from signature8.core.database import Base
from signature8.crm import mirror
from signature8.crm.enums import (
    HistoriqueType,
    OpportunityStage,
    OpportunityType,
    PaymentMethod,
    PaymentType,
    ProjectStage,
)
from signature8.crm.gateway import CrmGateway
from signature8.crm.models import (
    CRMClient,
    CRMClientStageHistory,
    CRMContact,
    CRMDevis,
    CRMHistorique,
    CRMOpportunity,
    CRMPayment,
)


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


@pytest.fixture()
def contact(db_session: Session) -> CRMContact:
    row = CRMContact(nom="Nabil Alami", telephone="0650000001", ville="Marrakech", architecte_assigne="archi-1")
    db_session.add(row)
    db_session.commit()
    return row


def _opportunity(db_session: Session, contact: CRMContact, **overrides: object) -> CRMOpportunity:
    values: dict[str, object] = {
        "contact_id": contact.id,
        "titre": "Villa Palmeraie",
        "type": OpportunityType.VILLA,
        "pipeline_stage": OpportunityStage.PROJET_ACCEPTE,
        "budget": Decimal("450000"),
    }
    values.update(overrides)
    row = CRMOpportunity(**values)
    db_session.add(row)
    db_session.commit()
    return row


def _intervals(db_session: Session, client_id: str) -> list[tuple[str, bool]]:
    rows = db_session.scalars(
        select(CRMClientStageHistory)
        .where(CRMClientStageHistory.client_id == client_id)
        .order_by(CRMClientStageHistory.started_at)
    )
    return [(row.stage_name, row.ended_at is None) for row in rows]


def test_reconcile_creates_then_leaves_mirror_alone(db_session: Session, contact: CRMContact) -> None:
    gateway = CrmGateway(db_session)
    opportunity = _opportunity(db_session, contact)
    client_id = f"{contact.id}-{opportunity.id}"

    assert mirror.reconcile(gateway, opportunity.id, changed_by="system") == "created"
    assert mirror.reconcile(gateway, opportunity.id, changed_by="system") == "unchanged"

    row = db_session.get(CRMClient, client_id)
    assert row is not None
    assert row.opportunity_id == opportunity.id
    assert row.statut_projet == ProjectStage.ACOMPTE_RECU
    assert row.nom == "Nabil Alami"
    assert row.titre == "Villa Palmeraie"
    assert row.type_projet == "villa"
    assert row.architecte_assigne == "archi-1"
    assert _intervals(db_session, client_id) == [("acompte_recu", True)]


def test_reconcile_syncs_fields_but_only_forces_refuse(db_session: Session, contact: CRMContact) -> None:
    gateway = CrmGateway(db_session)
    opportunity = _opportunity(db_session, contact)
    client_id = f"{contact.id}-{opportunity.id}"
    mirror.reconcile(gateway, opportunity.id)

    opportunity.titre = "Villa Palmeraie - extension"
    opportunity.pipeline_stage = OpportunityStage.GAGNEE
    db_session.commit()
    assert mirror.reconcile(gateway, opportunity.id) == "updated"
    row = db_session.get(CRMClient, client_id)
    assert row.titre == "Villa Palmeraie - extension"
    assert row.statut_projet == ProjectStage.ACOMPTE_RECU

    opportunity.pipeline_stage = OpportunityStage.PERDUE
    db_session.commit()
    assert mirror.reconcile(gateway, opportunity.id) == "updated"
    assert db_session.get(CRMClient, client_id).statut_projet == ProjectStage.REFUSE
    assert _intervals(db_session, client_id) == [("acompte_recu", False), ("refuse", True)]

    assert mirror.reconcile(gateway, opportunity.id) == "unchanged"


def test_reconcile_removes_mirror_of_deleted_opportunity(db_session: Session, contact: CRMContact) -> None:
    gateway = CrmGateway(db_session)
    opportunity = _opportunity(db_session, contact)
    opportunity_id = opportunity.id
    client_id = f"{contact.id}-{opportunity_id}"
    mirror.reconcile(gateway, opportunity_id)
    db_session.add_all(
        [
            CRMDevis(client_id=client_id, title="Devis cuisine", montant=Decimal("80000")),
            CRMPayment(client_id=client_id, montant=Decimal("5000"), methode=PaymentMethod.ESPECE, type=PaymentType.ACCOMPTE),
            CRMHistorique(client_id=client_id, type=HistoriqueType.NOTE, description="Visite du terrain"),
        ]
    )
    db_session.delete(opportunity)
    db_session.commit()

    assert mirror.reconcile(gateway, opportunity_id) == "removed"
    assert db_session.get(CRMClient, client_id) is None
    assert _intervals(db_session, client_id) == []
    for model in (CRMDevis, CRMPayment, CRMHistorique):
        assert db_session.scalars(select(model).where(model.client_id == client_id)).all() == []
    assert mirror.reconcile(gateway, uuid.uuid4()) == "unchanged"


def test_reconcile_all_counts_every_outcome(
    db_session: Session,
    contact: CRMContact,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    gateway = CrmGateway(db_session)
    mirrored = _opportunity(db_session, contact)
    mirror.reconcile(gateway, mirrored.id)
    _opportunity(db_session, contact, titre="Riad Médina", type=OpportunityType.RIAD)
    orphan = _opportunity(db_session, contact, titre="Bureau Guéliz", type=OpportunityType.BUREAU)
    mirror.reconcile(gateway, orphan.id)
    db_session.delete(orphan)
    db_session.commit()

    result = mirror.reconcile_all(gateway, changed_by="system")

    assert result.model_dump() == {"processed": 3, "created": 1, "updated": 1, "unchanged": 1, "failed": 0}

    broken = _opportunity(db_session, contact, titre="Appartement Hivernage", type=OpportunityType.APPARTEMENT)
    original = mirror.reconcile

    def flaky(gateway: CrmGateway, opportunity_id: uuid.UUID, **kwargs: object) -> str:
        if opportunity_id == broken.id:
            raise RuntimeError("lock timeout")
        return original(gateway, opportunity_id, **kwargs)

    monkeypatch.setattr(mirror, "reconcile", flaky)
    second = mirror.reconcile_all(gateway)

    assert second.failed == 1
    assert second.unchanged == 2
    assert second.processed == 3


def test_sweep_task_reconciles_with_system_actor(
    db_session: Session,
    contact: CRMContact,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    opportunity_id = _opportunity(db_session, contact).id
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)

    result = tasks.reconcile_mirrors()

    assert result == {"processed": 1, "created": 1, "updated": 0, "unchanged": 0, "failed": 0}
    stored = db_session.scalars(select(CRMClient).where(CRMClient.opportunity_id == opportunity_id)).one()
    assert stored.created_by == "system"
    assert any(record.getMessage() == "crm.mirror_sweep_task" for record in caplog.records)
