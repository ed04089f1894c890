"""Stage reconciliation engine.

Pure decision functions: each takes a snapshot of the current state plus an
incoming event and returns a :class:`Decision` listing the writes the
orchestration layer has to perform. Nothing in here touches the database or
the network.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Protocol, TypeVar

from signature8.crm.enums import (
    OPPORTUNITY_TYPE_LABELS,
    PIPELINE_STAGE_LABELS,
    STAGE_LABELS,
    ContactStatus,
    ContactTag,
    DevisStatus,
    HistoriqueType,
    NotificationKind,
    NotificationPriority,
    OpportunityStage,
    OpportunityStatus,
    OpportunityType,
    PaymentType,
    ProjectStage,
    StageCategory,
    TimelineEventType,
)


_EXCLUDED = frozenset({ProjectStage.PERDU, ProjectStage.REFUSE, ProjectStage.ANNULE, ProjectStage.SUSPENDU})
_TERMINE = frozenset({ProjectStage.TERMINE, ProjectStage.LIVRAISON_TERMINE, ProjectStage.LIVRAISON})
_EN_COURS = frozenset(
    {
        ProjectStage.ACCEPTE,
        ProjectStage.PREMIER_DEPOT,
        ProjectStage.PROJET_EN_COURS,
        ProjectStage.CHANTIER,
        ProjectStage.FACTURE_REGLEE,
        ProjectStage.EN_CHANTIER,
    }
)

PRE_DEPOSIT_STAGES = frozenset({ProjectStage.NOUVEAU, ProjectStage.QUALIFIE, ProjectStage.PRISE_DE_BESOIN})
DEVIS_ACCEPT_ADVANCES_FROM = frozenset(
    {ProjectStage.ACOMPTE_RECU, ProjectStage.CONCEPTION, ProjectStage.DEVIS_NEGOCIATION, ProjectStage.REFUSE}
)
DEVIS_REFUSE_MOVES_FROM = frozenset({ProjectStage.ACOMPTE_RECU, ProjectStage.CONCEPTION, ProjectStage.DEVIS_NEGOCIATION})
DEPOSIT_TARGET_STAGES = frozenset({OpportunityStage.PRISE_DE_BESOIN, OpportunityStage.PROJET_ACCEPTE})

MIRROR_STATUS_BY_STAGE: dict[OpportunityStage, ProjectStage] = {
    OpportunityStage.PROJET_ACCEPTE: ProjectStage.ACOMPTE_RECU,
    OpportunityStage.ACOMPTE_RECU: ProjectStage.ACOMPTE_RECU,
    OpportunityStage.GAGNEE: ProjectStage.PROJET_EN_COURS,
    OpportunityStage.PERDUE: ProjectStage.REFUSE,
}

PIPELINE_STAGE_BY_CLIENT_STAGE: dict[ProjectStage, OpportunityStage] = {
    ProjectStage.PRISE_DE_BESOIN: OpportunityStage.PRISE_DE_BESOIN,
    ProjectStage.ACOMPTE_RECU: OpportunityStage.PROJET_ACCEPTE,
    ProjectStage.CONCEPTION: OpportunityStage.ACOMPTE_RECU,
    ProjectStage.DEVIS_NEGOCIATION: OpportunityStage.ACOMPTE_RECU,
    ProjectStage.ACCEPTE: OpportunityStage.GAGNEE,
    ProjectStage.REFUSE: OpportunityStage.PERDUE,
    ProjectStage.PREMIER_DEPOT: OpportunityStage.GAGNEE,
    ProjectStage.PROJET_EN_COURS: OpportunityStage.GAGNEE,
    ProjectStage.CHANTIER: OpportunityStage.GAGNEE,
    ProjectStage.FACTURE_REGLEE: OpportunityStage.GAGNEE,
    ProjectStage.LIVRAISON_TERMINE: OpportunityStage.GAGNEE,
}

_STATUS_TIMELINE: dict[OpportunityStatus, tuple[TimelineEventType, str]] = {
    OpportunityStatus.WON: (TimelineEventType.OPPORTUNITY_WON, "✅ Gagnée"),
    OpportunityStatus.LOST: (TimelineEventType.OPPORTUNITY_LOST, "❌ Perdue"),
    OpportunityStatus.ON_HOLD: (TimelineEventType.OPPORTUNITY_ON_HOLD, "⏸ Suspendue"),
    OpportunityStatus.OPEN: (TimelineEventType.STATUS_CHANGED, "🔄 Réouverte"),
}

GENERIC_TITLES = frozenset(
    {"projet", "nouveau projet", "sans titre"}
    | {label.lower() for label in OPPORTUNITY_TYPE_LABELS.values()}
    | {member.value for member in OpportunityType}
)


def coerce_stage(value: ProjectStage | str | None) -> ProjectStage | None:
    if isinstance(value, ProjectStage):
        return value
    if not value:
        return None
    try:
        return ProjectStage(str(value).strip().lower())
    except ValueError:
        return None


def classify(stage: ProjectStage | str | None) -> StageCategory:
    resolved = coerce_stage(stage)
    if resolved in _EXCLUDED:
        return StageCategory.EXCLUDED
    if resolved in _TERMINE:
        return StageCategory.TERMINE
    if resolved in _EN_COURS:
        return StageCategory.EN_COURS
    return StageCategory.EN_ATTENTE


def stage_label(stage: ProjectStage | str | None) -> str:
    resolved = coerce_stage(stage)
    if resolved is not None and resolved in STAGE_LABELS:
        return STAGE_LABELS[resolved]
    return str(stage.value if isinstance(stage, ProjectStage) else stage or "")


# -- state snapshots ---------------------------------------------------------


@dataclass(frozen=True)
class LeadSnapshot:
    id: Any
    nom: str
    telephone: str
    ville: str | None = None
    type_bien: str | None = None
    source: str | None = None
    statut: str | None = None
    assigne_a: str | None = None
    magasin: str | None = None


@dataclass(frozen=True)
class ContactSnapshot:
    id: Any
    nom: str
    status: ContactStatus
    tag: ContactTag
    ville: str | None = None
    lead_status: ContactStatus | None = None
    client_since: datetime | None = None
    architecte_assigne: str | None = None


@dataclass(frozen=True)
class OpportunitySnapshot:
    id: Any
    contact_id: Any
    titre: str
    type: OpportunityType
    statut: OpportunityStatus
    pipeline_stage: OpportunityStage
    budget: Decimal | None = None
    architecte_assigne: str | None = None
    won_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ClientSnapshot:
    id: str
    statut_projet: ProjectStage | str
    open_stage: ProjectStage | str | None = None
    contact_id: Any = None
    opportunity_id: Any = None
    payment_count: int = 0

    @property
    def current_stage(self) -> ProjectStage | str:
        return self.open_stage or self.statut_projet


@dataclass(frozen=True)
class DevisSnapshot:
    id: Any
    title: str
    statut: DevisStatus
    facture_reglee: bool = False
    montant: Decimal = Decimal("0")


# -- effects -----------------------------------------------------------------


@dataclass(frozen=True)
class Effect:
    best_effort: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class CreateContact(Effect):
    contact_id: Any
    values: dict[str, Any]


@dataclass(frozen=True)
class UpdateContact(Effect):
    contact_id: Any
    changes: dict[str, Any]


@dataclass(frozen=True)
class CreateOpportunity(Effect):
    opportunity_id: Any
    values: dict[str, Any]


@dataclass(frozen=True)
class UpdateOpportunity(Effect):
    opportunity_id: Any
    changes: dict[str, Any]


@dataclass(frozen=True)
class AppendTimeline(Effect):
    contact_id: Any
    opportunity_id: Any
    event_type: TimelineEventType
    title: str
    description: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class AppendHistorique(Effect):
    client_id: str
    type: HistoriqueType
    description: str
    previous_status: str | None = None
    new_status: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class TransitionClientStage(Effect):
    """Close the open stage interval, open a new one and set statut_projet."""

    client_id: str
    from_stage: str | None
    to_stage: ProjectStage
    trigger: str


@dataclass(frozen=True)
class CreatePayment(Effect):
    payment_id: Any
    client_id: str
    values: dict[str, Any]


@dataclass(frozen=True)
class UpdateDevis(Effect):
    devis_id: Any
    changes: dict[str, Any]


@dataclass(frozen=True)
class DeleteLead(Effect):
    lead_id: Any
    converted_contact_id: Any


@dataclass(frozen=True)
class CopyLeadNotes(Effect):
    best_effort: ClassVar[bool] = True

    lead_id: Any
    contact_id: Any


@dataclass(frozen=True)
class ReconcileMirror(Effect):
    best_effort: ClassVar[bool] = True

    opportunity_id: Any


@dataclass(frozen=True)
class Notify(Effect):
    best_effort: ClassVar[bool] = True

    recipient: str
    kind: NotificationKind
    title: str
    message: str
    linked_type: str | None = None
    linked_id: str | None = None
    linked_name: str | None = None
    priority: NotificationPriority = NotificationPriority.MEDIUM


E = TypeVar("E", bound=Effect)


@dataclass
class Decision:
    effects: list[Effect] = field(default_factory=list)

    def add(self, effect: Effect) -> None:
        self.effects.append(effect)

    def extend(self, other: Decision) -> None:
        self.effects.extend(other.effects)

    def of_type(self, effect_type: type[E]) -> list[E]:
        return [effect for effect in self.effects if isinstance(effect, effect_type)]

    @property
    def primary(self) -> list[Effect]:
        return [effect for effect in self.effects if not effect.best_effort]

    @property
    def secondary(self) -> list[Effect]:
        return [effect for effect in self.effects if effect.best_effort]

    def __bool__(self) -> bool:
        return bool(self.effects)


# -- tag derivation ----------------------------------------------------------


def is_lost(opportunity: OpportunitySnapshot) -> bool:
    return opportunity.statut == OpportunityStatus.LOST or opportunity.pipeline_stage == OpportunityStage.PERDUE


def is_won(opportunity: OpportunitySnapshot) -> bool:
    return opportunity.statut == OpportunityStatus.WON or opportunity.pipeline_stage == OpportunityStage.GAGNEE


def has_won_ever(opportunity: OpportunitySnapshot) -> bool:
    return opportunity.won_at is not None or is_won(opportunity)


def is_active_deposit(opportunity: OpportunitySnapshot) -> bool:
    return (
        opportunity.pipeline_stage == OpportunityStage.ACOMPTE_RECU
        and not is_lost(opportunity)
        and not is_won(opportunity)
    )


def derive_tag(opportunities: Iterable[OpportunitySnapshot]) -> ContactTag:
    for opportunity in opportunities:
        if is_active_deposit(opportunity) or has_won_ever(opportunity):
            return ContactTag.CLIENT
    return ContactTag.CONVERTED


def _tag_effects(
    contact: ContactSnapshot,
    opportunities: Sequence[OpportunitySnapshot],
    *,
    now: datetime,
    trigger: OpportunitySnapshot | None,
) -> list[Effect]:
    target = derive_tag(opportunities)
    if target == contact.tag:
        return []

    trigger_id = str(trigger.id) if trigger is not None else None
    if target == ContactTag.CLIENT:
        changes: dict[str, Any] = {"tag": ContactTag.CLIENT}
        if contact.client_since is None:
            changes["client_since"] = now
        if trigger is not None and has_won_ever(trigger):
            description = f'Le contact a été automatiquement converti en client suite à la première opportunité gagnée: "{trigger.titre}"'
        else:
            description = "Le contact est devenu client suite à la réception d'un acompte"
        return [
            UpdateContact(contact.id, changes),
            AppendTimeline(
                contact.id,
                None,
                TimelineEventType.STATUS_CHANGED,
                "🎉 Contact converti en Client",
                description,
                {"previousTag": contact.tag.value, "newTag": ContactTag.CLIENT.value, "triggeredByOpportunity": trigger_id},
            ),
        ]

    return [
        UpdateContact(contact.id, {"tag": ContactTag.CONVERTED}),
        AppendTimeline(
            contact.id,
            None,
            TimelineEventType.STATUS_CHANGED,
            "Contact repassé en converti",
            "Aucune autre opportunité active avec acompte reçu",
            {"previousTag": contact.tag.value, "newTag": ContactTag.CONVERTED.value, "triggeredByOpportunity": trigger_id},
        ),
    ]


# -- lead conversion ---------------------------------------------------------


def decide_lead_conversion(
    lead: LeadSnapshot | None,
    existing: ContactSnapshot | None,
    *,
    contact_id: Any,
    values: dict[str, Any],
    architect: str | None,
) -> Decision:
    """Convert a lead, or heal the contact a previous conversion produced.

    ``values`` carries caller-supplied contact fields; ``status`` and
    ``lead_status`` in it are always overridden with ``qualifie``.
    """
    decision = Decision()

    if existing is not None:
        drifted = existing.status != ContactStatus.QUALIFIE or existing.lead_status not in (None, ContactStatus.QUALIFIE)
        if drifted:
            decision.add(
                UpdateContact(existing.id, {"status": ContactStatus.QUALIFIE, "lead_status": ContactStatus.QUALIFIE})
            )
            decision.add(
                AppendTimeline(
                    existing.id,
                    None,
                    TimelineEventType.STATUS_CHANGED,
                    "Statut corrigé: Qualifié",
                    "Le statut d'un contact issu d'un lead converti est toujours « qualifie »",
                    {"previousStatus": existing.status.value, "newStatus": ContactStatus.QUALIFIE.value},
                )
            )
        if lead is not None:
            decision.add(CopyLeadNotes(lead.id, existing.id))
            decision.add(DeleteLead(lead.id, existing.id))
        return decision

    if lead is None:
        return decision

    assigned = architect or lead.assigne_a
    contact_values = {
        "nom": values.get("nom") or lead.nom,
        "telephone": values.get("telephone") or lead.telephone,
        "email": values.get("email"),
        "ville": values.get("ville") or lead.ville,
        "adresse": values.get("adresse"),
        "notes": values.get("notes"),
        "magasin": values.get("magasin") or lead.magasin,
        "source": lead.source,
        "type_bien": lead.type_bien,
        "lead_id": lead.id,
        "architecte_assigne": assigned,
        "tag": ContactTag.CONVERTED,
        "status": ContactStatus.QUALIFIE,
        "lead_status": ContactStatus.QUALIFIE,
    }
    decision.add(CreateContact(contact_id, contact_values))
    decision.add(
        AppendTimeline(
            contact_id,
            None,
            TimelineEventType.CONTACT_CONVERTED_FROM_LEAD,
            "Contact créé depuis un lead",
            f"Lead converti en contact (statut du lead: {lead.statut or 'nouveau'})",
            {"leadId": str(lead.id), "source": lead.source, "previousLeadStatus": lead.statut},
        )
    )
    decision.add(CopyLeadNotes(lead.id, contact_id))
    decision.add(DeleteLead(lead.id, contact_id))
    if assigned:
        decision.add(
            Notify(
                recipient=assigned,
                kind=NotificationKind.ARCHITECT_ASSIGNED,
                title="Nouveau contact assigné",
                message=f"Le contact {contact_values['nom']} vous a été assigné",
                linked_type="contact",
                linked_id=str(contact_id),
                linked_name=contact_values["nom"],
                priority=NotificationPriority.HIGH,
            )
        )
    return decision


# -- opportunities -----------------------------------------------------------


def default_title(opportunity_type: OpportunityType, ville: str | None, nom: str | None) -> str:
    label = OPPORTUNITY_TYPE_LABELS[opportunity_type]
    place = (ville or "").strip() or (nom or "").strip()
    return f"{label} - {place}" if place else label


def initial_pipeline_stage(contact: ContactSnapshot, requested: OpportunityStage | None) -> OpportunityStage:
    if requested is not None:
        return requested
    if contact.status == ContactStatus.ACOMPTE_RECU:
        return OpportunityStage.ACOMPTE_RECU
    return OpportunityStage.PROJET_ACCEPTE


def mirror_status_for_stage(stage: OpportunityStage | None) -> ProjectStage:
    if stage is None:
        return ProjectStage.NOUVEAU
    return MIRROR_STATUS_BY_STAGE.get(stage, ProjectStage.NOUVEAU)


def mirror_client_id(contact_id: Any, opportunity_id: Any) -> str:
    return f"{contact_id}-{opportunity_id}"


def decide_opportunity_creation(
    contact: ContactSnapshot,
    existing: Sequence[OpportunitySnapshot],
    *,
    opportunity_id: Any,
    values: dict[str, Any],
    now: datetime,
) -> Decision:
    opportunity_type = OpportunityType(values["type"])
    titre = (values.get("titre") or "").strip() or default_title(opportunity_type, contact.ville, contact.nom)
    stage = initial_pipeline_stage(contact, values.get("pipeline_stage"))
    statut = OpportunityStatus(values.get("statut") or OpportunityStatus.OPEN)
    architect = values.get("architecte_assigne") or contact.architecte_assigne

    created_values = {
        **values,
        "contact_id": contact.id,
        "titre": titre,
        "type": opportunity_type,
        "statut": statut,
        "pipeline_stage": stage,
        "architecte_assigne": architect,
        "won_at": now if statut == OpportunityStatus.WON else None,
        "lost_at": now if statut == OpportunityStatus.LOST else None,
    }
    created = OpportunitySnapshot(
        id=opportunity_id,
        contact_id=contact.id,
        titre=titre,
        type=opportunity_type,
        statut=statut,
        pipeline_stage=stage,
        budget=values.get("budget"),
        architecte_assigne=architect,
        won_at=created_values["won_at"],
        created_at=now,
    )

    decision = Decision()
    decision.add(CreateOpportunity(opportunity_id, created_values))
    decision.add(
        AppendTimeline(
            contact.id,
            opportunity_id,
            TimelineEventType.OPPORTUNITY_CREATED,
            f"Opportunité créée: {titre}",
            f"Type: {OPPORTUNITY_TYPE_LABELS[opportunity_type]} - Étape: {PIPELINE_STAGE_LABELS[stage]}",
            {"type": opportunity_type.value, "pipelineStage": stage.value, "budget": _num(values.get("budget"))},
        )
    )
    decision.effects.extend(_tag_effects(contact, [*existing, created], now=now, trigger=created))
    decision.add(ReconcileMirror(opportunity_id))
    if architect:
        decision.add(
            Notify(
                recipient=architect,
                kind=NotificationKind.OPPORTUNITY_CREATED,
                title="Nouvelle opportunité",
                message=f"L'opportunité « {titre} » ({contact.nom}) vous a été assignée",
                linked_type="opportunity",
                linked_id=str(opportunity_id),
                linked_name=titre,
            )
        )
    return decision


def decide_opportunity_update(
    contact: ContactSnapshot,
    before: OpportunitySnapshot,
    changes: dict[str, Any],
    others: Sequence[OpportunitySnapshot],
    *,
    now: datetime,
    current_fields: dict[str, Any] | None = None,
) -> Decision:
    """``current_fields`` holds stored values for fields the snapshot does not carry."""
    current = {**(current_fields or {}), **{name: getattr(before, name) for name in _SNAPSHOT_FIELDS}}
    applied = {key: value for key, value in changes.items() if current.get(key, _MISSING) != value}
    if "titre" in applied and not (applied["titre"] or "").strip():
        applied.pop("titre")
    if not applied:
        return Decision()

    new_status = applied.get("statut")
    new_stage = applied.get("pipeline_stage")
    if new_status == OpportunityStatus.WON and before.won_at is None:
        applied["won_at"] = now
    if new_status == OpportunityStatus.LOST or new_stage == OpportunityStage.PERDUE:
        applied["lost_at"] = now

    after = replace(before, **{key: value for key, value in applied.items() if key in _SNAPSHOT_FIELDS})

    decision = Decision()
    decision.add(UpdateOpportunity(before.id, applied))

    if new_status is not None:
        event_type, label = _STATUS_TIMELINE[new_status]
        decision.add(
            AppendTimeline(
                contact.id,
                before.id,
                event_type,
                f"Opportunité: {label}",
                f'Statut changé de "{before.statut.value}" à "{new_status.value}"',
                {"previousStatus": before.statut.value, "newStatus": new_status.value},
            )
        )
    elif new_stage is not None:
        decision.add(
            AppendTimeline(
                contact.id,
                before.id,
                TimelineEventType.STATUS_CHANGED,
                f"Pipeline: {PIPELINE_STAGE_LABELS[new_stage]}",
                f"Étape pipeline changée: {PIPELINE_STAGE_LABELS[before.pipeline_stage]} → {PIPELINE_STAGE_LABELS[new_stage]}",
                {"previousStage": before.pipeline_stage.value, "newStage": new_stage.value},
            )
        )
    else:
        edited = sorted(key for key in applied if key not in {"won_at", "lost_at"})
        decision.add(
            AppendTimeline(
                contact.id,
                before.id,
                TimelineEventType.STATUS_CHANGED,
                "Opportunité mise à jour",
                f"Modifications: {', '.join(edited)}",
                {"fields": edited},
            )
        )

    decision.effects.extend(_tag_effects(contact, [*others, after], now=now, trigger=after))
    decision.add(ReconcileMirror(before.id))

    new_architect = applied.get("architecte_assigne")
    if new_architect:
        decision.add(
            Notify(
                recipient=new_architect,
                kind=NotificationKind.ARCHITECT_ASSIGNED,
                title="Opportunité assignée",
                message=f"L'opportunité « {after.titre} » vous a été assignée",
                linked_type="opportunity",
                linked_id=str(before.id),
                linked_name=after.titre,
            )
        )
    return decision


def decide_opportunity_removal(
    contact: ContactSnapshot,
    removed: OpportunitySnapshot,
    remaining: Sequence[OpportunitySnapshot],
    *,
    now: datetime,
) -> Decision:
    decision = Decision()
    decision.add(
        AppendTimeline(
            contact.id,
            None,
            TimelineEventType.OTHER,
            f"Opportunité supprimée: {removed.titre}",
            None,
            {"opportunityId": str(removed.id)},
        )
    )
    decision.effects.extend(_tag_effects(contact, remaining, now=now, trigger=None))
    return decision


def decide_contact_update(contact: ContactSnapshot, changes: dict[str, Any], current: dict[str, Any]) -> Decision:
    """Plain field edits on a contact; a new architect gets a timeline entry and a notification."""
    applied = {key: value for key, value in changes.items() if current.get(key) != value}
    if not applied:
        return Decision()

    decision = Decision()
    decision.add(UpdateContact(contact.id, applied))
    new_architect = applied.get("architecte_assigne")
    if new_architect:
        decision.add(
            AppendTimeline(
                contact.id,
                None,
                TimelineEventType.ARCHITECT_ASSIGNED,
                f"Architecte assigné: {new_architect}",
                None,
                {"previousArchitect": contact.architecte_assigne, "newArchitect": new_architect},
            )
        )
        decision.add(
            Notify(
                recipient=new_architect,
                kind=NotificationKind.ARCHITECT_ASSIGNED,
                title="Nouveau contact assigné",
                message=f"Le contact {applied.get('nom') or contact.nom} vous a été assigné",
                linked_type="contact",
                linked_id=str(contact.id),
                linked_name=applied.get("nom") or contact.nom,
                priority=NotificationPriority.HIGH,
            )
        )
    return decision


def decide_contact_lost(contact: ContactSnapshot, reason: str | None, *, notes: str | None = None) -> Decision:
    if contact.status == ContactStatus.PERDU:
        return Decision()
    changes: dict[str, Any] = {"status": ContactStatus.PERDU}
    if reason:
        entry = f"[Perdu] {reason}"
        changes["notes"] = f"{notes}\n\n{entry}" if notes else entry
    decision = Decision()
    decision.add(UpdateContact(contact.id, changes))
    decision.add(
        AppendTimeline(
            contact.id,
            None,
            TimelineEventType.STATUS_CHANGED,
            "Contact marqué comme perdu",
            f"Le contact a été marqué comme perdu. Raison: {reason or 'Non spécifiée'}",
            {"previousStatus": contact.status.value, "newStatus": ContactStatus.PERDU.value, "reason": reason},
        )
    )
    return decision


# -- mirror ------------------------------------------------------------------


def decide_mirror_stage(
    opportunity: OpportunitySnapshot,
    existing: ClientSnapshot | None,
) -> tuple[ProjectStage | None, ProjectStage | None]:
    """Return ``(initial_stage, transition_to)`` for an opportunity mirror.

    A missing row is created with the mapped status. An existing row is only
    forced to ``refuse`` when the opportunity is lost; delivery stages set by
    hand are otherwise left alone.
    """
    if existing is None:
        return mirror_status_for_stage(opportunity.pipeline_stage), None
    if is_lost(opportunity) and coerce_stage(existing.current_stage) != ProjectStage.REFUSE:
        return None, ProjectStage.REFUSE
    return None, None


# -- devis -------------------------------------------------------------------


def devis_stage_target(current: ProjectStage | str | None, devis: Sequence[DevisSnapshot]) -> ProjectStage | None:
    stage = coerce_stage(current)
    if stage is None or not devis:
        return None
    if any(item.statut == DevisStatus.ACCEPTE for item in devis):
        if stage in DEVIS_ACCEPT_ADVANCES_FROM:
            return ProjectStage.ACCEPTE
        return None
    if all(item.statut == DevisStatus.REFUSE for item in devis) and stage in DEVIS_REFUSE_MOVES_FROM:
        return ProjectStage.REFUSE
    return None


def _devis_stage_effects(client: ClientSnapshot, devis: Sequence[DevisSnapshot]) -> list[Effect]:
    target = devis_stage_target(client.current_stage, devis)
    if target is None:
        return []
    previous = _stage_value(client.current_stage)
    return [
        TransitionClientStage(client.id, previous, target, trigger="devis"),
        AppendHistorique(
            client.id,
            HistoriqueType.STATUT,
            f'Statut changé automatiquement de "{stage_label(previous)}" vers "{stage_label(target)}" (devis)',
            previous_status=previous,
            new_status=target.value,
        ),
    ]


def decide_devis_created(client: ClientSnapshot, existing: Sequence[DevisSnapshot], created: DevisSnapshot) -> Decision:
    decision = Decision()
    decision.add(
        AppendHistorique(
            client.id,
            HistoriqueType.DEVIS,
            f'Devis créé: "{created.title}" ({_num(created.montant)} MAD)',
            metadata={"devisId": str(created.id), "statut": created.statut.value},
        )
    )
    decision.effects.extend(_devis_stage_effects(client, [*existing, created]))
    return decision


def decide_devis_status(
    client: ClientSnapshot,
    devis: Sequence[DevisSnapshot],
    devis_id: Any,
    new_status: DevisStatus,
    *,
    facture_reglee: bool | None,
    now: datetime,
) -> Decision:
    target = next((item for item in devis if item.id == devis_id), None)
    if target is None:
        return Decision()

    if new_status == DevisStatus.ACCEPTE:
        settled = target.facture_reglee if facture_reglee is None else facture_reglee
    else:
        settled = False

    changes: dict[str, Any] = {}
    if new_status != target.statut:
        changes["statut"] = new_status
        changes["validated_at"] = now if new_status == DevisStatus.ACCEPTE else None
    if settled != target.facture_reglee:
        changes["facture_reglee"] = settled
    if not changes:
        return Decision()

    decision = Decision()
    decision.add(UpdateDevis(devis_id, changes))
    if "statut" in changes:
        decision.add(
            AppendHistorique(
                client.id,
                HistoriqueType.DEVIS,
                f'Devis "{target.title}": {target.statut.value} → {new_status.value}',
                previous_status=target.statut.value,
                new_status=new_status.value,
                metadata={"devisId": str(devis_id), "factureReglee": settled},
            )
        )
        updated = [replace(item, statut=new_status, facture_reglee=settled) if item.id == devis_id else item for item in devis]
        decision.effects.extend(_devis_stage_effects(client, updated))
    else:
        decision.add(
            AppendHistorique(
                client.id,
                HistoriqueType.DEVIS,
                f'Devis "{target.title}": facture {"réglée" if settled else "non réglée"}',
                metadata={"devisId": str(devis_id), "factureReglee": settled},
            )
        )
    return decision


# -- payments ----------------------------------------------------------------


def payment_type_for(client: ClientSnapshot) -> PaymentType:
    stage = coerce_stage(client.current_stage)
    pre_deposit = stage is None or stage in PRE_DEPOSIT_STAGES
    if pre_deposit and client.payment_count == 0:
        return PaymentType.ACCOMPTE
    return PaymentType.PAIEMENT


def deposit_target(
    opportunities: Sequence[OpportunitySnapshot],
    preferred_id: Any = None,
) -> OpportunitySnapshot | None:
    candidates = [
        item
        for item in opportunities
        if item.pipeline_stage in DEPOSIT_TARGET_STAGES and not is_lost(item) and not is_won(item)
    ]
    if preferred_id is not None:
        return next((item for item in candidates if item.id == preferred_id), None)
    if not candidates:
        return None
    return max(candidates, key=lambda item: (item.created_at is not None, item.created_at))


def decide_payment(
    client: ClientSnapshot,
    contact: ContactSnapshot | None,
    opportunities: Sequence[OpportunitySnapshot],
    *,
    payment_id: Any,
    values: dict[str, Any],
    now: datetime,
    payment_type: PaymentType | None = None,
) -> Decision:
    """Book a payment on ``client``. ``payment_type`` overrides the stage-derived type."""
    payment_type = payment_type or payment_type_for(client)
    montant = _num(values.get("montant"))
    methode = _enum_value(values.get("methode"))
    reference = values.get("reference")

    decision = Decision()
    decision.add(CreatePayment(payment_id, client.id, {**values, "type": payment_type}))
    label = "Acompte reçu" if payment_type == PaymentType.ACCOMPTE else "Paiement reçu"
    description = f"{label}: {montant} MAD ({methode})"
    if reference:
        description += f" - Réf: {reference}"
    decision.add(
        AppendHistorique(
            client.id,
            HistoriqueType.ACOMPTE if payment_type == PaymentType.ACCOMPTE else HistoriqueType.PAIEMENT,
            description,
            metadata={"paymentId": str(payment_id), "type": payment_type.value},
        )
    )

    if coerce_stage(client.current_stage) != ProjectStage.QUALIFIE:
        return decision

    decision.add(TransitionClientStage(client.id, ProjectStage.QUALIFIE.value, ProjectStage.ACOMPTE_RECU, trigger="payment"))
    decision.add(
        AppendHistorique(
            client.id,
            HistoriqueType.STATUT,
            "Auto-progression: statut changé automatiquement vers acompte_recu (acompte reçu)",
            previous_status=ProjectStage.QUALIFIE.value,
            new_status=ProjectStage.ACOMPTE_RECU.value,
            metadata={"paymentId": str(payment_id), "autoProgression": True},
        )
    )
    if contact is not None:
        decision.extend(_deposit_on_contact(contact, opportunities, client.opportunity_id, now=now))
    return decision


def _deposit_on_contact(
    contact: ContactSnapshot,
    opportunities: Sequence[OpportunitySnapshot],
    preferred_id: Any,
    *,
    now: datetime,
) -> Decision:
    decision = Decision()
    if contact.status != ContactStatus.ACOMPTE_RECU:
        decision.add(
            UpdateContact(contact.id, {"status": ContactStatus.ACOMPTE_RECU, "lead_status": ContactStatus.ACOMPTE_RECU})
        )

    target = deposit_target(opportunities, preferred_id)
    if target is None:
        return decision

    others = [item for item in opportunities if item.id != target.id]
    decision.extend(
        decide_opportunity_update(
            contact,
            target,
            {"pipeline_stage": OpportunityStage.ACOMPTE_RECU},
            others,
            now=now,
        )
    )
    return decision


def decide_opportunity_deposit(
    contact: ContactSnapshot,
    opportunity: OpportunitySnapshot,
    others: Sequence[OpportunitySnapshot],
    *,
    montant: Any,
    methode: Any,
    now: datetime,
) -> Decision:
    """Move one opportunity to ``acompte_recu`` because a deposit came in.

    The payment row itself is decided against the mirror client afterwards,
    once the mirror exists.
    """
    decision = decide_opportunity_update(
        contact,
        opportunity,
        {"pipeline_stage": OpportunityStage.ACOMPTE_RECU},
        others,
        now=now,
    )
    if contact.status != ContactStatus.ACOMPTE_RECU:
        decision.add(
            UpdateContact(contact.id, {"status": ContactStatus.ACOMPTE_RECU, "lead_status": ContactStatus.ACOMPTE_RECU})
        )
    decision.add(
        AppendTimeline(
            contact.id,
            opportunity.id,
            TimelineEventType.STATUS_CHANGED,
            "💰 Acompte reçu",
            f"Acompte de {_num(montant)} MAD reçu ({_enum_value(methode)})",
            {"montant": _num(montant), "methode": _enum_value(methode)},
        )
    )
    return decision


# -- manual stage change -----------------------------------------------------


def pipeline_stage_for_client_stage(stage: ProjectStage) -> OpportunityStage | None:
    return PIPELINE_STAGE_BY_CLIENT_STAGE.get(stage)


def decide_manual_stage(
    client: ClientSnapshot,
    new_stage: ProjectStage,
    *,
    contact: ContactSnapshot | None,
) -> Decision:
    previous = _stage_value(client.current_stage)
    if coerce_stage(previous) == new_stage:
        return Decision()

    decision = Decision()
    decision.add(TransitionClientStage(client.id, previous, new_stage, trigger="manual"))
    decision.add(
        AppendHistorique(
            client.id,
            HistoriqueType.STATUT,
            f'Statut changé de "{stage_label(previous)}" vers "{stage_label(new_stage)}"',
            previous_status=previous,
            new_status=new_stage.value,
        )
    )

    # a contact-level client row carries the contact's own status
    if contact is not None and client.opportunity_id is None:
        try:
            contact_status = ContactStatus(new_stage.value)
        except ValueError:
            contact_status = None
        if contact_status is not None and contact_status != contact.status:
            decision.add(UpdateContact(contact.id, {"status": contact_status, "lead_status": contact_status}))
    return decision


# -- read-side helpers -------------------------------------------------------


class DedupeRow(Protocol):
    contact_id: Any
    opportunity_id: Any
    contact_name: str | None
    title: str | None
    budget: Any


_WS_RE = re.compile(r"\s+")
R = TypeVar("R", bound=DedupeRow)


def normalize_text(value: str | None) -> str:
    return _WS_RE.sub(" ", (value or "").strip().lower())


def is_generic_title(title: str | None) -> bool:
    normalized = normalize_text(title)
    return not normalized or normalized in GENERIC_TITLES


def _budget_key(value: Any) -> str:
    if value is None or value == "":
        return ""
    try:
        return str(Decimal(str(value)).normalize())
    except ArithmeticError:
        return str(value)


def dedupe_clients(rows: Iterable[R]) -> list[R]:
    """Keep the first row of each duplicate group, in input order."""
    seen_opportunities: set[str] = set()
    seen_contact_titles: set[tuple[str, str, str]] = set()
    seen_name_titles: set[tuple[str, str]] = set()
    kept: list[R] = []

    for row in rows:
        opportunity_key = str(row.opportunity_id) if row.opportunity_id else None
        title = normalize_text(row.title)
        contact_key = (str(row.contact_id), title, _budget_key(row.budget)) if row.contact_id else None
        name = normalize_text(row.contact_name)
        name_key = (name, title) if name and not is_generic_title(row.title) else None

        if opportunity_key is not None and opportunity_key in seen_opportunities:
            continue
        if contact_key is not None and contact_key in seen_contact_titles:
            continue
        if name_key is not None and name_key in seen_name_titles:
            continue

        if opportunity_key is not None:
            seen_opportunities.add(opportunity_key)
        if contact_key is not None:
            seen_contact_titles.add(contact_key)
        if name_key is not None:
            seen_name_titles.add(name_key)
        kept.append(row)
    return kept


def format_stage_duration(seconds: float | int | None) -> str:
    if seconds is None or seconds < 60:
        return "Récent"
    total = int(seconds)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60
    if days:
        return f"{days}j {hours}h" if hours else f"{days}j"
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"


@dataclass(frozen=True)
class PaymentSummary:
    total_accepte: Decimal
    total_paye: Decimal
    reste: Decimal
    progression: int


def payment_summary(devis: Iterable[DevisSnapshot], payments: Iterable[Decimal]) -> PaymentSummary:
    total_accepte = sum((item.montant for item in devis if item.statut == DevisStatus.ACCEPTE), Decimal("0"))
    total_paye = sum((Decimal(str(amount)) for amount in payments), Decimal("0"))
    reste = max(total_accepte - total_paye, Decimal("0"))
    progression = 0
    if total_accepte > 0:
        progression = min(100, int(total_paye * 100 / total_accepte))
    return PaymentSummary(total_accepte=total_accepte, total_paye=total_paye, reste=reste, progression=progression)


_MISSING = object()
_SNAPSHOT_FIELDS = frozenset(OpportunitySnapshot.__dataclass_fields__)


def _stage_value(stage: ProjectStage | str | None) -> str | None:
    if isinstance(stage, ProjectStage):
        return stage.value
    return stage


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _num(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value
