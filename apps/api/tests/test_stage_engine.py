from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from signature8.crm.engine import (
    AppendHistorique,
    AppendTimeline,
    ClientSnapshot,
    ContactSnapshot,
    CopyLeadNotes,
    CreateContact,
    CreatePayment,
    DeleteLead,
    DevisSnapshot,
    LeadSnapshot,
    Notify,
    OpportunitySnapshot,
    ReconcileMirror,
    TransitionClientStage,
    UpdateContact,
    UpdateDevis,
    UpdateOpportunity,
    classify,
    decide_contact_lost,
    decide_devis_created,
    decide_devis_status,
    decide_lead_conversion,
    decide_manual_stage,
    decide_mirror_stage,
    decide_opportunity_creation,
    decide_opportunity_update,
    decide_payment,
    dedupe_clients,
    default_title,
    derive_tag,
    format_stage_duration,
    payment_summary,
    payment_type_for,
)
from signature8.crm.enums import (
    ContactStatus,
    ContactTag,
    DevisStatus,
    NotificationPriority,
    OpportunityStage,
    OpportunityStatus,
    OpportunityType,
    PaymentType,
    ProjectStage,
    StageCategory,
)


NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def _contact(**overrides: Any) -> ContactSnapshot:
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "nom": "Karim Bennani",
        "status": ContactStatus.QUALIFIE,
        "tag": ContactTag.CONVERTED,
        "ville": "Casablanca",
    }
    values.update(overrides)
    return ContactSnapshot(**values)


def _opportunity(contact: ContactSnapshot, **overrides: Any) -> OpportunitySnapshot:
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "contact_id": contact.id,
        "titre": "Villa - Casablanca",
        "type": OpportunityType.VILLA,
        "statut": OpportunityStatus.OPEN,
        "pipeline_stage": OpportunityStage.PROJET_ACCEPTE,
    }
    values.update(overrides)
    return OpportunitySnapshot(**values)


def _client(stage: ProjectStage | str, **overrides: Any) -> ClientSnapshot:
    values: dict[str, Any] = {"id": str(uuid.uuid4()), "statut_projet": stage}
    values.update(overrides)
    return ClientSnapshot(**values)


@dataclass
class _Row:
    contact_id: Any
    opportunity_id: Any
    contact_name: str | None
    title: str | None
    budget: Any
    label: str


def test_classify_is_total_and_excludes_closed_stages() -> None:
    for stage in ("perdu", "refuse", "annule", "suspendu"):
        assert classify(stage) == StageCategory.EXCLUDED
    assert classify(ProjectStage.LIVRAISON_TERMINE) == StageCategory.TERMINE
    assert classify("termine") == StageCategory.TERMINE
    assert classify("chantier") == StageCategory.EN_COURS
    assert classify(" Projet_En_Cours ") == StageCategory.EN_COURS
    assert classify("qualifie") == StageCategory.EN_ATTENTE
    assert classify("something-unknown") == StageCategory.EN_ATTENTE
    assert classify(None) == StageCategory.EN_ATTENTE
    assert classify("") == StageCategory.EN_ATTENTE


def test_lead_conversion_always_starts_qualifie() -> None:
    lead = LeadSnapshot(id=uuid.uuid4(), nom="Sara", telephone="0612345678", statut="nouveau", assigne_a="archi-1")
    contact_id = uuid.uuid4()

    decision = decide_lead_conversion(
        lead,
        None,
        contact_id=contact_id,
        values={"status": "prise_de_besoin", "ville": "Rabat"},
        architect=None,
    )

    created = decision.of_type(CreateContact)
    assert len(created) == 1
    assert created[0].values["status"] == ContactStatus.QUALIFIE
    assert created[0].values["lead_status"] == ContactStatus.QUALIFIE
    assert created[0].values["tag"] == ContactTag.CONVERTED
    assert created[0].values["ville"] == "Rabat"
    assert created[0].values["architecte_assigne"] == "archi-1"
    assert decision.of_type(DeleteLead)[0].converted_contact_id == contact_id
    assert [effect.lead_id for effect in decision.of_type(CopyLeadNotes)] == [lead.id]

    notify = decision.of_type(Notify)
    assert len(notify) == 1
    assert notify[0].recipient == "archi-1"
    assert notify[0].priority == NotificationPriority.HIGH
    assert all(effect.best_effort for effect in decision.secondary)
    assert not any(isinstance(effect, (CopyLeadNotes, Notify)) for effect in decision.primary)


def test_reconversion_heals_drifted_status_without_creating_a_contact() -> None:
    existing = _contact(status=ContactStatus.PRISE_DE_BESOIN, lead_status=ContactStatus.PRISE_DE_BESOIN)

    decision = decide_lead_conversion(None, existing, contact_id=existing.id, values={}, architect=None)

    assert not decision.of_type(CreateContact)
    updates = decision.of_type(UpdateContact)
    assert updates[0].changes == {"status": ContactStatus.QUALIFIE, "lead_status": ContactStatus.QUALIFIE}
    assert len(decision.of_type(AppendTimeline)) == 1


def test_reconversion_of_healthy_contact_is_a_no_op() -> None:
    existing = _contact(lead_status=ContactStatus.QUALIFIE)
    assert not decide_lead_conversion(None, existing, contact_id=existing.id, values={}, architect=None)


def test_default_title_uses_type_label_and_city_then_name() -> None:
    assert default_title(OpportunityType.VILLA, "Casablanca", "Karim") == "Villa - Casablanca"
    assert default_title(OpportunityType.RENOVATION, None, "Karim") == "Rénovation - Karim"
    assert default_title(OpportunityType.BUREAU, "  ", "") == "Bureau"


def test_opportunity_creation_defaults_and_mirror() -> None:
    contact = _contact()
    opportunity_id = uuid.uuid4()

    decision = decide_opportunity_creation(
        contact,
        [],
        opportunity_id=opportunity_id,
        values={"type": OpportunityType.APPARTEMENT, "titre": "   "},
        now=NOW,
    )

    values = decision.effects[0].values  # type: ignore[attr-defined]
    assert values["titre"] == "Appartement - Casablanca"
    assert values["pipeline_stage"] == OpportunityStage.PROJET_ACCEPTE
    assert decision.of_type(ReconcileMirror)[0].opportunity_id == opportunity_id
    assert not decision.of_type(UpdateContact)


def test_opportunity_creation_for_deposit_contact_promotes_to_client() -> None:
    contact = _contact(status=ContactStatus.ACOMPTE_RECU)

    decision = decide_opportunity_creation(
        contact,
        [],
        opportunity_id=uuid.uuid4(),
        values={"type": OpportunityType.VILLA},
        now=NOW,
    )

    assert decision.effects[0].values["pipeline_stage"] == OpportunityStage.ACOMPTE_RECU  # type: ignore[attr-defined]
    update = decision.of_type(UpdateContact)[0]
    assert update.changes == {"tag": ContactTag.CLIENT, "client_since": NOW}


def test_client_since_is_set_only_once() -> None:
    first = datetime(2025, 1, 1, tzinfo=timezone.utc)
    contact = _contact(status=ContactStatus.ACOMPTE_RECU, client_since=first)

    decision = decide_opportunity_creation(
        contact,
        [],
        opportunity_id=uuid.uuid4(),
        values={"type": OpportunityType.VILLA},
        now=NOW,
    )

    assert decision.of_type(UpdateContact)[0].changes == {"tag": ContactTag.CLIENT}


def test_derive_tag_follows_active_deposit_or_any_win() -> None:
    contact = _contact()
    active = _opportunity(contact, pipeline_stage=OpportunityStage.ACOMPTE_RECU)
    lost_deposit = _opportunity(
        contact, pipeline_stage=OpportunityStage.ACOMPTE_RECU, statut=OpportunityStatus.LOST
    )
    won_before = _opportunity(contact, statut=OpportunityStatus.OPEN, won_at=NOW)
    plain = _opportunity(contact)

    assert derive_tag([active]) == ContactTag.CLIENT
    assert derive_tag([lost_deposit, plain]) == ContactTag.CONVERTED
    assert derive_tag([won_before]) == ContactTag.CLIENT
    assert derive_tag([]) == ContactTag.CONVERTED


def test_losing_last_deposit_reverts_tag() -> None:
    contact = _contact(tag=ContactTag.CLIENT, client_since=NOW)
    before = _opportunity(contact, pipeline_stage=OpportunityStage.ACOMPTE_RECU)

    decision = decide_opportunity_update(
        contact, before, {"pipeline_stage": OpportunityStage.PERDUE}, [], now=NOW
    )

    update = decision.of_type(UpdateOpportunity)[0]
    assert update.changes["pipeline_stage"] == OpportunityStage.PERDUE
    assert update.changes["lost_at"] == NOW
    assert decision.of_type(UpdateContact)[0].changes == {"tag": ContactTag.CONVERTED}
    titles = [effect.title for effect in decision.of_type(AppendTimeline)]
    assert titles[0].startswith("Pipeline:")
    assert "Contact repassé en converti" in titles
    assert decision.of_type(ReconcileMirror)


def test_losing_one_deposit_keeps_tag_when_another_is_active() -> None:
    contact = _contact(tag=ContactTag.CLIENT, client_since=NOW)
    before = _opportunity(contact, pipeline_stage=OpportunityStage.ACOMPTE_RECU)
    other = _opportunity(contact, pipeline_stage=OpportunityStage.ACOMPTE_RECU)

    decision = decide_opportunity_update(contact, before, {"statut": OpportunityStatus.LOST}, [other], now=NOW)

    assert not decision.of_type(UpdateContact)


def test_first_win_promotes_and_stamps_won_at() -> None:
    contact = _contact()
    before = _opportunity(contact)

    decision = decide_opportunity_update(contact, before, {"statut": OpportunityStatus.WON}, [], now=NOW)

    assert decision.of_type(UpdateOpportunity)[0].changes["won_at"] == NOW
    assert decision.of_type(UpdateContact)[0].changes["tag"] == ContactTag.CLIENT
    timeline = decision.of_type(AppendTimeline)
    assert timeline[0].title == "Opportunité: ✅ Gagnée"
    assert "première opportunité gagnée" in (timeline[1].description or "")


def test_update_emits_exactly_one_primary_timeline_entry() -> None:
    contact = _contact()
    before = _opportunity(contact)

    both = decide_opportunity_update(
        contact,
        before,
        {"statut": OpportunityStatus.ON_HOLD, "pipeline_stage": OpportunityStage.PRISE_DE_BESOIN},
        [],
        now=NOW,
    )
    fields_only = decide_opportunity_update(
        contact, before, {"description": "Piscine"}, [], now=NOW, current_fields={"description": None}
    )

    assert [effect.title for effect in both.of_type(AppendTimeline)] == ["Opportunité: ⏸ Suspendue"]
    assert [effect.title for effect in fields_only.of_type(AppendTimeline)] == ["Opportunité mise à jour"]


def test_update_without_changes_is_empty() -> None:
    contact = _contact()
    before = _opportunity(contact)
    assert not decide_opportunity_update(
        contact, before, {"pipeline_stage": before.pipeline_stage}, [], now=NOW
    )


def test_mirror_stage_only_forces_refuse_on_lost() -> None:
    contact = _contact()
    won = _opportunity(contact, pipeline_stage=OpportunityStage.GAGNEE)
    lost = _opportunity(contact, pipeline_stage=OpportunityStage.PERDUE)

    assert decide_mirror_stage(won, None) == (ProjectStage.PROJET_EN_COURS, None)
    assert decide_mirror_stage(_opportunity(contact, pipeline_stage=OpportunityStage.PRISE_DE_BESOIN), None) == (
        ProjectStage.NOUVEAU,
        None,
    )
    assert decide_mirror_stage(won, _client(ProjectStage.CHANTIER)) == (None, None)
    assert decide_mirror_stage(lost, _client(ProjectStage.CHANTIER)) == (None, ProjectStage.REFUSE)
    assert decide_mirror_stage(lost, _client(ProjectStage.REFUSE)) == (None, None)


def test_first_payment_at_qualifie_advances_once() -> None:
    contact = _contact()
    opportunity = _opportunity(contact)
    client = _client(ProjectStage.QUALIFIE, open_stage="qualifie", contact_id=contact.id)

    decision = decide_payment(
        client,
        contact,
        [opportunity],
        payment_id=uuid.uuid4(),
        values={"montant": Decimal("5000"), "methode": "virement"},
        now=NOW,
    )

    assert decision.of_type(CreatePayment)[0].values["type"] == PaymentType.ACCOMPTE
    transitions = decision.of_type(TransitionClientStage)
    assert len(transitions) == 1
    assert transitions[0].to_stage == ProjectStage.ACOMPTE_RECU
    auto = [effect for effect in decision.of_type(AppendHistorique) if effect.description.startswith("Auto-progression")]
    assert len(auto) == 1
    contact_update = decision.of_type(UpdateContact)
    assert contact_update[0].changes["status"] == ContactStatus.ACOMPTE_RECU
    opportunity_update = decision.of_type(UpdateOpportunity)[0]
    assert opportunity_update.opportunity_id == opportunity.id
    assert opportunity_update.changes["pipeline_stage"] == OpportunityStage.ACOMPTE_RECU
    assert any(effect.changes.get("tag") == ContactTag.CLIENT for effect in contact_update)

    second = decide_payment(
        _client(ProjectStage.ACOMPTE_RECU, payment_count=1),
        contact,
        [opportunity],
        payment_id=uuid.uuid4(),
        values={"montant": Decimal("1000"), "methode": "espece"},
        now=NOW,
    )
    assert second.of_type(CreatePayment)[0].values["type"] == PaymentType.PAIEMENT
    assert not second.of_type(TransitionClientStage)


def test_payment_type_uses_open_interval_stage() -> None:
    assert payment_type_for(_client(ProjectStage.NOUVEAU)) == PaymentType.ACCOMPTE
    assert payment_type_for(_client(ProjectStage.QUALIFIE, open_stage="chantier")) == PaymentType.PAIEMENT
    assert payment_type_for(_client(ProjectStage.QUALIFIE, payment_count=2)) == PaymentType.PAIEMENT
    assert payment_type_for(_client("stage-inconnu")) == PaymentType.ACCOMPTE


def test_devis_acceptance_never_advances_qualifie() -> None:
    client = _client(ProjectStage.QUALIFIE)
    devis = DevisSnapshot(id=uuid.uuid4(), title="Cuisine", statut=DevisStatus.ACCEPTE, montant=Decimal("12000"))

    decision = decide_devis_created(client, [], devis)

    assert not decision.of_type(TransitionClientStage)
    assert len(decision.of_type(AppendHistorique)) == 1


def test_devis_acceptance_and_refusal_move_stage() -> None:
    first = DevisSnapshot(id=uuid.uuid4(), title="Cuisine", statut=DevisStatus.EN_ATTENTE)
    second = DevisSnapshot(id=uuid.uuid4(), title="Salon", statut=DevisStatus.REFUSE)

    accepted = decide_devis_status(
        _client(ProjectStage.CONCEPTION), [first, second], first.id, DevisStatus.ACCEPTE, facture_reglee=None, now=NOW
    )
    assert accepted.of_type(TransitionClientStage)[0].to_stage == ProjectStage.ACCEPTE
    assert accepted.of_type(UpdateDevis)[0].changes["validated_at"] == NOW

    refused = decide_devis_status(
        _client(ProjectStage.DEVIS_NEGOCIATION), [first, second], first.id, DevisStatus.REFUSE, facture_reglee=None, now=NOW
    )
    assert refused.of_type(TransitionClientStage)[0].to_stage == ProjectStage.REFUSE


def test_refusing_every_devis_leaves_delivery_stages_alone() -> None:
    devis = DevisSnapshot(id=uuid.uuid4(), title="Cuisine", statut=DevisStatus.EN_ATTENTE)

    for stage in (ProjectStage.ACCEPTE, ProjectStage.PROJET_EN_COURS, ProjectStage.LIVRAISON_TERMINE):
        decision = decide_devis_status(
            _client(stage), [devis], devis.id, DevisStatus.REFUSE, facture_reglee=None, now=NOW
        )
        assert not decision.of_type(TransitionClientStage)
        assert decision.of_type(UpdateDevis)[0].changes["statut"] == DevisStatus.REFUSE


def test_devis_leaving_accepte_clears_facture_reglee() -> None:
    devis = DevisSnapshot(id=uuid.uuid4(), title="Cuisine", statut=DevisStatus.ACCEPTE, facture_reglee=True)

    decision = decide_devis_status(
        _client(ProjectStage.ACCEPTE), [devis], devis.id, DevisStatus.REFUSE, facture_reglee=True, now=NOW
    )

    changes = decision.of_type(UpdateDevis)[0].changes
    assert changes["statut"] == DevisStatus.REFUSE
    assert changes["facture_reglee"] is False
    assert changes["validated_at"] is None


def test_manual_stage_on_contact_level_client_updates_contact_status() -> None:
    contact = _contact()
    client = _client(ProjectStage.QUALIFIE, contact_id=contact.id)

    decision = decide_manual_stage(client, ProjectStage.PRISE_DE_BESOIN, contact=contact)

    assert decision.of_type(TransitionClientStage)[0].trigger == "manual"
    historique = decision.of_type(AppendHistorique)[0]
    assert historique.description == 'Statut changé de "Qualifié" vers "Prise de besoin"'
    assert decision.of_type(UpdateContact)[0].changes["status"] == ContactStatus.PRISE_DE_BESOIN
    assert not decide_manual_stage(client, ProjectStage.QUALIFIE, contact=contact)


def test_contact_lost_appends_reason_to_notes() -> None:
    contact = _contact()

    decision = decide_contact_lost(contact, "Budget insuffisant", notes="Rappeler en mai")

    changes = decision.of_type(UpdateContact)[0].changes
    assert changes["status"] == ContactStatus.PERDU
    assert changes["notes"] == "Rappeler en mai\n\n[Perdu] Budget insuffisant"
    assert not decide_contact_lost(_contact(status=ContactStatus.PERDU), "x")


def test_dedupe_keeps_first_row_per_group() -> None:
    contact_id = uuid.uuid4()
    opportunity_id = uuid.uuid4()
    rows = [
        _Row(contact_id, opportunity_id, "Karim", "Villa Anfa", Decimal("100.00"), "stored"),
        _Row(contact_id, opportunity_id, "Karim", "Villa Anfa", Decimal("100.00"), "derived"),
        _Row(contact_id, None, "Karim", "  villa   ANFA ", Decimal("100"), "same-title"),
        _Row(uuid.uuid4(), None, "karim", "Villa Anfa", None, "same-name"),
        _Row(uuid.uuid4(), None, "Karim", "Villa", None, "generic-1"),
        _Row(uuid.uuid4(), None, "Karim", "villa", None, "generic-2"),
    ]

    kept = [row.label for row in dedupe_clients(rows)]

    assert kept == ["stored", "generic-1", "generic-2"]


def test_stage_duration_and_payment_summary() -> None:
    assert format_stage_duration(None) == "Récent"
    assert format_stage_duration(59) == "Récent"
    assert format_stage_duration(5 * 60) == "5m"
    assert format_stage_duration(3 * 3600 + 120) == "3h 2m"
    assert format_stage_duration(2 * 86400 + 3 * 3600) == "2j 3h"
    assert format_stage_duration(86400) == "1j"

    devis = [
        DevisSnapshot(id=1, title="A", statut=DevisStatus.ACCEPTE, montant=Decimal("10000")),
        DevisSnapshot(id=2, title="B", statut=DevisStatus.REFUSE, montant=Decimal("9999")),
    ]
    summary = payment_summary(devis, [Decimal("2500"), Decimal("500")])
    assert summary.total_accepte == Decimal("10000")
    assert summary.total_paye == Decimal("3000")
    assert summary.reste == Decimal("7000")
    assert summary.progression == 30
    assert payment_summary([], [Decimal("10")]).progression == 0
