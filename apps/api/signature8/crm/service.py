from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func

from signature8 import events
from signature8.core.rbac import RESTRICTED_ROLES
from signature8.crm import mirror, notifications
from signature8.crm.engine import (
    AppendHistorique,
    AppendTimeline,
    CopyLeadNotes,
    CreateContact,
    CreateOpportunity,
    CreatePayment,
    Decision,
    DeleteLead,
    Effect,
    Notify,
    ReconcileMirror,
    TransitionClientStage,
    UpdateContact,
    UpdateDevis,
    UpdateOpportunity,
    classify,
    coerce_stage,
    decide_contact_lost,
    decide_contact_update,
    decide_devis_created,
    decide_devis_status,
    decide_lead_conversion,
    decide_manual_stage,
    decide_opportunity_creation,
    decide_opportunity_deposit,
    decide_opportunity_removal,
    decide_opportunity_update,
    decide_payment,
    dedupe_clients,
    format_stage_duration,
    mirror_client_id,
    mirror_status_for_stage,
    normalize_text,
    payment_summary,
    pipeline_stage_for_client_stage,
    stage_label,
)
from signature8.crm.enums import (
    ContactStatus,
    ContactTag,
    DevisStatus,
    HistoriqueType,
    NotificationKind,
    NotificationPriority,
    PaymentType,
    ProjectStage,
    StageCategory,
    UserRole,
)
from signature8.crm.gateway import CrmGateway
from signature8.crm.models import (
    CRMClient,
    CRMClientStageHistory,
    CRMContact,
    CRMDevis,
    CRMHistorique,
    CRMLead,
    CRMLeadNote,
    CRMNote,
    CRMNotification,
    CRMOpportunity,
    CRMPayment,
    CRMTimeline,
    CRMUser,
    as_aware,
    utcnow,
)
from signature8.crm.schemas import (
    ArchitectStatsRead,
    ClientDetailRead,
    ClientRead,
    ClientStageChangeRequest,
    ContactConvertLeadRequest,
    ContactMarkLostRequest,
    ContactRead,
    ContactUpdate,
    DepositRequest,
    DevisCreate,
    DevisRead,
    DevisUpdate,
    HistoriqueRead,
    LeadConvertRequest,
    LeadCreate,
    LeadNoteCreate,
    LeadNoteRead,
    LeadRead,
    LeadUpdate,
    NotificationCreate,
    NotificationRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    PaymentCreate,
    PaymentRead,
    PaymentSummaryRead,
    ReconcileResult,
    StageIntervalRead,
    TimelineRead,
    UserCreate,
    UserRead,
)
from signature8.crm.snapshots import (
    client_snapshot,
    contact_snapshot,
    devis_snapshot,
    lead_snapshot,
    opportunity_snapshot,
)
from signature8.metrics import observe_stage_transition


logger = logging.getLogger("signature8.crm.service")


@dataclass
class ActorUser:
    user_id: str
    role: str
    permissions: set[str]
    name: str | None = None
    email: str | None = None
    correlation_id: str | None = None

    @property
    def is_restricted(self) -> bool:
        return self.role in RESTRICTED_ROLES

    @property
    def display_name(self) -> str:
        return self.name or self.user_id

    def refers_to(self, ref: str | None) -> bool:
        """The architect/assignee fields hold either a user id or a display name."""
        if not ref:
            return False
        return ref == self.user_id or (self.name is not None and ref == self.name)


def can_view_lead(actor_user: ActorUser, lead: CRMLead) -> bool:
    if not actor_user.is_restricted:
        return True
    return lead.created_by == actor_user.user_id or actor_user.refers_to(lead.assigne_a)


def can_view_contact(actor_user: ActorUser, contact: CRMContact) -> bool:
    if not actor_user.is_restricted:
        return True
    return (
        actor_user.user_id in {contact.created_by, contact.converted_by}
        or actor_user.refers_to(contact.architecte_assigne)
        or actor_user.user_id in (contact.invited_user_ids or [])
    )


def can_view_opportunity(actor_user: ActorUser, opportunity: CRMOpportunity) -> bool:
    if not actor_user.is_restricted:
        return True
    return (
        opportunity.created_by == actor_user.user_id
        or actor_user.refers_to(opportunity.architecte_assigne)
        or can_view_contact(actor_user, opportunity.contact)
    )


def can_view_client(actor_user: ActorUser, client: CRMClient, contact: CRMContact | None) -> bool:
    if not actor_user.is_restricted:
        return True
    if client.created_by == actor_user.user_id or actor_user.refers_to(client.architecte_assigne):
        return True
    return contact is not None and can_view_contact(actor_user, contact)


def _publish(actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(event_type, actor_user.user_id, payload)
    envelope["correlation_id"] = actor_user.correlation_id
    events.publish(envelope)


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


class EffectExecutor:
    """Runs the writes a :class:`Decision` lists against the gateway.

    Primary effects are applied inside the caller's unit of work. Secondary
    effects are applied one by one after the commit, each isolated by
    :meth:`CrmGateway.best_effort`.
    """

    def __init__(self, gateway: CrmGateway, actor_user: ActorUser, *, now: datetime) -> None:
        self.gateway = gateway
        self.actor_user = actor_user
        self.now = now
        self.transitions: list[TransitionClientStage] = []
        self._lead_notes: dict[Any, list[tuple[uuid.UUID, str, str | None, datetime]]] = {}
        self._handlers: dict[type[Effect], Callable[[Any], None]] = {
            CreateContact: self._create_contact,
            UpdateContact: self._update_contact,
            CreateOpportunity: self._create_opportunity,
            UpdateOpportunity: self._update_opportunity,
            AppendTimeline: self._append_timeline,
            AppendHistorique: self._append_historique,
            TransitionClientStage: self._transition_client_stage,
            CreatePayment: self._create_payment,
            UpdateDevis: self._update_devis,
            DeleteLead: self._delete_lead,
            CopyLeadNotes: self._copy_lead_notes,
            ReconcileMirror: self._reconcile_mirror,
            Notify: self._notify,
        }

    def apply_primary(self, decision: Decision) -> None:
        for effect in decision.of_type(CopyLeadNotes):
            self._snapshot_lead_notes(effect.lead_id)
        for effect in decision.primary:
            self._handlers[type(effect)](effect)

    def apply_secondary(self, decision: Decision) -> None:
        for effect in decision.secondary:
            self.gateway.best_effort(effect.name, lambda effect=effect: self._handlers[type(effect)](effect))

    def _snapshot_lead_notes(self, lead_id: Any) -> None:
        # the lead and its notes are deleted by the primary unit; copy-through runs afterwards
        lead = self.gateway.get_lead(lead_id)
        if lead is None:
            return
        self._lead_notes[lead_id] = [(note.id, note.content, note.author, note.created_at) for note in lead.notes]

    def _create_contact(self, effect: CreateContact) -> None:
        self.gateway.add(
            CRMContact(
                id=effect.contact_id,
                created_by=self.actor_user.user_id,
                converted_by=self.actor_user.user_id,
                invited_user_ids=[],
                **effect.values,
            )
        )

    def _update_contact(self, effect: UpdateContact) -> None:
        contact = self.gateway.get_contact(effect.contact_id)
        if contact is None:
            raise _not_found("contact")
        self.gateway.update(contact, effect.changes)

    def _create_opportunity(self, effect: CreateOpportunity) -> None:
        self.gateway.add(CRMOpportunity(id=effect.opportunity_id, created_by=self.actor_user.user_id, **effect.values))

    def _update_opportunity(self, effect: UpdateOpportunity) -> None:
        opportunity = self.gateway.get_opportunity(effect.opportunity_id)
        if opportunity is None:
            raise _not_found("opportunity")
        self.gateway.update(opportunity, effect.changes)

    def _append_timeline(self, effect: AppendTimeline) -> None:
        self.gateway.add(
            CRMTimeline(
                contact_id=effect.contact_id,
                opportunity_id=effect.opportunity_id,
                event_type=effect.event_type,
                title=effect.title,
                description=effect.description,
                metadata_json=effect.metadata,
                author=self.actor_user.user_id,
            )
        )

    def _append_historique(self, effect: AppendHistorique) -> None:
        self.gateway.add(
            CRMHistorique(
                client_id=effect.client_id,
                type=effect.type,
                description=effect.description,
                auteur=self.actor_user.display_name,
                previous_status=effect.previous_status,
                new_status=effect.new_status,
                metadata_json=effect.metadata,
            )
        )

    def _transition_client_stage(self, effect: TransitionClientStage) -> None:
        client = self.gateway.get_client(effect.client_id)
        if client is None:
            raise _not_found("client")
        self.gateway.transition_client_stage(client, effect.to_stage, changed_by=self.actor_user.user_id, now=self.now)
        self.transitions.append(effect)
        observe_stage_transition(effect.to_stage.value, effect.trigger)
        logger.info(
            "crm.stage_transition",
            extra={
                "entity_type": "client",
                "entity_id": effect.client_id,
                "from_stage": effect.from_stage,
                "to_stage": effect.to_stage.value,
            },
        )

    def _create_payment(self, effect: CreatePayment) -> None:
        values = {key: value for key, value in effect.values.items() if not (key == "date" and value is None)}
        self.gateway.add(
            CRMPayment(id=effect.payment_id, client_id=effect.client_id, created_by=self.actor_user.user_id, **values)
        )

    def _update_devis(self, effect: UpdateDevis) -> None:
        devis = self.gateway.session.get(CRMDevis, effect.devis_id)
        if devis is None:
            raise _not_found("devis")
        self.gateway.update(devis, effect.changes)

    def _delete_lead(self, effect: DeleteLead) -> None:
        self.gateway.session.flush()
        if self.gateway.get_contact(effect.converted_contact_id) is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="converted contact was not persisted; lead kept",
            )
        lead = self.gateway.get_lead(effect.lead_id)
        if lead is not None:
            self.gateway.delete(lead)

    def _copy_lead_notes(self, effect: CopyLeadNotes) -> None:
        snapshots = self._lead_notes.get(effect.lead_id, [])
        refs = {f"lead_note:{note_id}": (content, author, created_at) for note_id, content, author, created_at in snapshots}
        already = self.gateway.existing_note_refs(refs)
        self.gateway.add_notes(
            CRMNote(
                entity_type="contact",
                entity_id=str(effect.contact_id),
                content=content,
                author=author,
                source="lead",
                source_ref=ref,
                created_at=created_at,
            )
            for ref, (content, author, created_at) in refs.items()
            if ref not in already
        )

    def _reconcile_mirror(self, effect: ReconcileMirror) -> None:
        mirror.reconcile(self.gateway, effect.opportunity_id, changed_by=self.actor_user.user_id, now=self.now)

    def _notify(self, effect: Notify) -> None:
        notifications.notify(self.gateway, effect, created_by=self.actor_user.user_id)


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, gateway: CrmGateway, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        def unit() -> uuid.UUID:
            lead = gateway.add(CRMLead(**dto.model_dump(), created_by=actor_user.user_id))
            return lead.id

        lead_id = gateway.run_unit(unit, operation="lead_create")
        _publish(actor_user, "crm.lead.created", {"lead_id": str(lead_id), "statut": dto.statut})
        return self._to_read(gateway, lead_id)

    def list_leads(self, gateway: CrmGateway, actor_user: ActorUser, filters: dict[str, Any]) -> list[LeadRead]:
        where: list[Any] = []
        if filters.get("statut"):
            where.append(CRMLead.statut == filters["statut"])
        if filters.get("source"):
            where.append(CRMLead.source == filters["source"])
        leads = gateway.find_many(CRMLead, where=where, order_by=CRMLead.created_at.desc())
        query = normalize_text(filters.get("q"))
        if query:
            leads = [lead for lead in leads if query in normalize_text(lead.nom) or query in (lead.telephone or "")]
        return [LeadRead.model_validate(lead) for lead in leads if can_view_lead(actor_user, lead)]

    def get_lead(self, gateway: CrmGateway, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        self._load(gateway, actor_user, lead_id)
        return self._to_read(gateway, lead_id)

    def update_lead(self, gateway: CrmGateway, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}

        def unit() -> None:
            lead = self._load(gateway, actor_user, lead_id)
            if changes:
                gateway.update(lead, changes)

        gateway.run_unit(unit, operation="lead_update")
        if changes:
            _publish(actor_user, "crm.lead.updated", {"lead_id": str(lead_id), "fields": sorted(changes)})
        return self._to_read(gateway, lead_id)

    def delete_lead(self, gateway: CrmGateway, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        gateway.run_unit(lambda: gateway.delete(self._load(gateway, actor_user, lead_id)), operation="lead_delete")
        _publish(actor_user, "crm.lead.deleted", {"lead_id": str(lead_id)})

    def add_note(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadNoteCreate,
    ) -> LeadNoteRead:
        def unit() -> CRMLeadNote:
            self._load(gateway, actor_user, lead_id)
            return gateway.add(CRMLeadNote(lead_id=lead_id, content=dto.content, author=actor_user.display_name))

        note = gateway.run_unit(unit, operation="lead_note_create")
        return LeadNoteRead.model_validate(note)

    def convert_lead(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest | ContactConvertLeadRequest,
    ) -> ContactRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        overrides = dto.model_dump(exclude={"architecte_assigne", "status", "lead_id"})

        def unit() -> tuple[Decision, uuid.UUID, bool]:
            existing = gateway.find_contact_by_lead(lead_id)
            lead = gateway.get_lead(lead_id)
            if existing is None and lead is None:
                raise _not_found("lead")
            if existing is None and not can_view_lead(actor_user, lead):
                raise _not_found("lead")
            if existing is not None and not can_view_contact(actor_user, existing):
                raise _not_found("lead")

            if existing is None:
                telephone = overrides.get("telephone") or lead.telephone
                clash = gateway.find_many(CRMContact, where=[CRMContact.telephone == telephone])
                if any(item.lead_id is not None and item.lead_id != lead_id for item in clash):
                    raise HTTPException(
                        status_code=status.HTTP_409_CONFLICT,
                        detail=f"a contact with phone {telephone} already exists for another lead",
                    )

            contact_id = existing.id if existing is not None else uuid.uuid4()
            decision = decide_lead_conversion(
                lead_snapshot(lead) if lead is not None else None,
                contact_snapshot(existing) if existing is not None else None,
                contact_id=contact_id,
                values=overrides,
                architect=dto.architecte_assigne,
            )
            executor.apply_primary(decision)
            return decision, contact_id, existing is None

        decision, contact_id, created = gateway.run_unit(unit, operation="lead_convert")
        executor.apply_secondary(decision)
        logger.info(
            "crm.lead_converted",
            extra={"entity_type": "contact", "entity_id": str(contact_id)},
        )
        _publish(
            actor_user,
            "crm.lead.converted",
            {"lead_id": str(lead_id), "contact_id": str(contact_id), "created": created},
        )
        return ContactService.to_read(gateway, contact_id)

    def _load(self, gateway: CrmGateway, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        lead = gateway.get_lead(lead_id)
        if lead is None or not can_view_lead(actor_user, lead):
            raise _not_found("lead")
        return lead

    def _to_read(self, gateway: CrmGateway, lead_id: uuid.UUID) -> LeadRead:
        lead = gateway.get_lead(lead_id)
        if lead is None:
            raise _not_found("lead")
        gateway.session.refresh(lead)
        return LeadRead.model_validate(lead)


class ContactService:
    entity_type = "crm.contact"

    def list_contacts(self, gateway: CrmGateway, actor_user: ActorUser, filters: dict[str, Any]) -> list[ContactRead]:
        where: list[Any] = []
        if filters.get("tag"):
            where.append(CRMContact.tag == filters["tag"])
        if filters.get("status"):
            where.append(CRMContact.status == filters["status"])
        contacts = gateway.find_many(CRMContact, where=where, order_by=CRMContact.created_at.desc())
        query = normalize_text(filters.get("q"))
        if query:
            contacts = [item for item in contacts if query in normalize_text(item.nom) or query in item.telephone]
        return [ContactRead.model_validate(item) for item in contacts if can_view_contact(actor_user, item)]

    def get_contact(self, gateway: CrmGateway, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(self.load(gateway, actor_user, contact_id))

    def update_contact(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        executor = EffectExecutor(gateway, actor_user, now=utcnow())
        changes = dto.model_dump(exclude_unset=True)
        for required in ("nom", "telephone", "invited_user_ids"):
            if changes.get(required, "") is None:
                changes.pop(required)

        def unit() -> Decision:
            contact = self.load(gateway, actor_user, contact_id)
            current = {key: getattr(contact, key) for key in changes}
            decision = decide_contact_update(contact_snapshot(contact), changes, current)
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="contact_update")
        executor.apply_secondary(decision)
        if decision:
            _publish(actor_user, "crm.contact.updated", {"contact_id": str(contact_id), "fields": sorted(changes)})
        return self.to_read(gateway, contact_id)

    def mark_lost(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactMarkLostRequest,
    ) -> ContactRead:
        executor = EffectExecutor(gateway, actor_user, now=utcnow())

        def unit() -> Decision:
            contact = self.load(gateway, actor_user, contact_id)
            decision = decide_contact_lost(contact_snapshot(contact), dto.reason, notes=contact.notes)
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="contact_mark_lost")
        if decision:
            _publish(actor_user, "crm.contact.lost", {"contact_id": str(contact_id), "reason": dto.reason})
        return self.to_read(gateway, contact_id)

    def timeline(self, gateway: CrmGateway, actor_user: ActorUser, contact_id: uuid.UUID) -> list[TimelineRead]:
        self.load(gateway, actor_user, contact_id)
        return [TimelineRead.model_validate(item) for item in gateway.timeline_for_contact(contact_id)]

    def load(self, gateway: CrmGateway, actor_user: ActorUser, contact_id: uuid.UUID) -> CRMContact:
        contact = gateway.get_contact(contact_id)
        if contact is None or not can_view_contact(actor_user, contact):
            raise _not_found("contact")
        return contact

    @staticmethod
    def to_read(gateway: CrmGateway, contact_id: uuid.UUID) -> ContactRead:
        contact = gateway.get_contact(contact_id)
        if contact is None:
            raise _not_found("contact")
        gateway.session.refresh(contact)
        return ContactRead.model_validate(contact)


contact_service = ContactService()


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_opportunity(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        dto: OpportunityCreate,
        contact_id: uuid.UUID | None = None,
    ) -> OpportunityRead:
        target_contact_id = contact_id or dto.contact_id
        if target_contact_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="contact_id is required")
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        opportunity_id = uuid.uuid4()

        def unit() -> Decision:
            contact = contact_service.load(gateway, actor_user, target_contact_id)
            existing = [opportunity_snapshot(item) for item in gateway.opportunities_for_contact(contact.id)]
            decision = decide_opportunity_creation(
                contact_snapshot(contact),
                existing,
                opportunity_id=opportunity_id,
                values=dto.model_dump(exclude={"contact_id"}),
                now=now,
            )
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="opportunity_create")
        executor.apply_secondary(decision)
        opportunity = self._get(gateway, opportunity_id)
        _publish(
            actor_user,
            "crm.opportunity.created",
            {
                "opportunity_id": str(opportunity_id),
                "contact_id": str(target_contact_id),
                "pipeline_stage": opportunity.pipeline_stage.value,
            },
        )
        return OpportunityRead.model_validate(opportunity)

    def list_opportunities(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        filters: dict[str, Any],
    ) -> list[OpportunityRead]:
        where: list[Any] = []
        if filters.get("contact_id"):
            where.append(CRMOpportunity.contact_id == filters["contact_id"])
        if filters.get("statut"):
            where.append(CRMOpportunity.statut == filters["statut"])
        if filters.get("pipeline_stage"):
            where.append(CRMOpportunity.pipeline_stage == filters["pipeline_stage"])
        items = gateway.find_many(CRMOpportunity, where=where, order_by=CRMOpportunity.created_at.desc())
        return [OpportunityRead.model_validate(item) for item in items if can_view_opportunity(actor_user, item)]

    def list_for_contact(self, gateway: CrmGateway, actor_user: ActorUser, contact_id: uuid.UUID) -> list[OpportunityRead]:
        contact_service.load(gateway, actor_user, contact_id)
        return [OpportunityRead.model_validate(item) for item in gateway.opportunities_for_contact(contact_id)]

    def get_opportunity(self, gateway: CrmGateway, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        return OpportunityRead.model_validate(self._load(gateway, actor_user, opportunity_id))

    def update_opportunity(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        changes = dto.model_dump(exclude_unset=True)
        for required in ("titre", "type", "statut", "pipeline_stage"):
            if changes.get(required, "") is None:
                changes.pop(required)

        def unit() -> tuple[Decision, str]:
            opportunity = self._load(gateway, actor_user, opportunity_id)
            before_stage = opportunity.pipeline_stage.value
            others = [
                opportunity_snapshot(item)
                for item in gateway.opportunities_for_contact(opportunity.contact_id)
                if item.id != opportunity.id
            ]
            decision = decide_opportunity_update(
                contact_snapshot(opportunity.contact),
                opportunity_snapshot(opportunity),
                changes,
                others,
                now=now,
                current_fields={key: getattr(opportunity, key) for key in changes},
            )
            executor.apply_primary(decision)
            return decision, before_stage

        decision, before_stage = gateway.run_unit(unit, operation="opportunity_update")
        executor.apply_secondary(decision)
        opportunity = self._get(gateway, opportunity_id)
        if decision:
            applied = decision.of_type(UpdateOpportunity)[0].changes
            _publish(
                actor_user,
                "crm.opportunity.updated",
                {"opportunity_id": str(opportunity_id), "fields": sorted(applied)},
            )
            if opportunity.pipeline_stage.value != before_stage:
                _publish(
                    actor_user,
                    "crm.opportunity.stage_changed",
                    {
                        "opportunity_id": str(opportunity_id),
                        "from_stage": before_stage,
                        "to_stage": opportunity.pipeline_stage.value,
                    },
                )
        return OpportunityRead.model_validate(opportunity)

    def delete_opportunity(self, gateway: CrmGateway, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)

        def unit() -> Decision:
            opportunity = self._load(gateway, actor_user, opportunity_id)
            contact = opportunity.contact
            removed = opportunity_snapshot(opportunity)
            remaining = [
                opportunity_snapshot(item)
                for item in gateway.opportunities_for_contact(contact.id)
                if item.id != opportunity.id
            ]
            gateway.delete(opportunity)
            decision = decide_opportunity_removal(contact_snapshot(contact), removed, remaining, now=now)
            decision.add(ReconcileMirror(opportunity_id))
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="opportunity_delete")
        executor.apply_secondary(decision)
        _publish(actor_user, "crm.opportunity.deleted", {"opportunity_id": str(opportunity_id)})

    def record_deposit(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: DepositRequest,
    ) -> OpportunityRead:
        if dto.montant is None or dto.methode is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="montant and methode are required")
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        payment_id = uuid.uuid4()

        def unit() -> tuple[Decision, str]:
            opportunity = self._load(gateway, actor_user, opportunity_id)
            contact = opportunity.contact
            others = [
                opportunity_snapshot(item)
                for item in gateway.opportunities_for_contact(contact.id)
                if item.id != opportunity.id
            ]
            decision = decide_opportunity_deposit(
                contact_snapshot(contact),
                opportunity_snapshot(opportunity),
                others,
                montant=dto.montant,
                methode=dto.methode,
                now=now,
            )
            executor.apply_primary(decision)

            mirror.reconcile(gateway, opportunity.id, changed_by=actor_user.user_id, now=now)
            client = gateway.get_client(mirror_client_id(contact.id, opportunity.id))
            if client is None:
                raise _not_found("client")
            payment = decide_payment(
                client_snapshot(gateway, client),
                None,
                [],
                payment_id=payment_id,
                values=dto.model_dump(),
                now=now,
                payment_type=PaymentType.ACCOMPTE,
            )
            executor.apply_primary(payment)
            decision.extend(payment)
            return decision, client.id

        decision, client_id = gateway.run_unit(unit, operation="opportunity_deposit")
        executor.apply_secondary(decision)
        client_service._publish_transitions(gateway, actor_user, executor.transitions)
        client = gateway.get_client(client_id)
        payment = gateway.session.get(CRMPayment, payment_id)
        _publish(
            actor_user,
            "crm.payment.recorded",
            {
                "client_id": client_id,
                "payment_id": str(payment_id),
                "montant": str(dto.montant),
                "type": payment.type.value if payment is not None else None,
                "nom": client.nom if client is not None else None,
                "architecte_assigne": client.architecte_assigne if client is not None else None,
            },
        )
        return OpportunityRead.model_validate(self._get(gateway, opportunity_id))

    def _load(self, gateway: CrmGateway, actor_user: ActorUser, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = gateway.get_opportunity(opportunity_id)
        if opportunity is None or not can_view_opportunity(actor_user, opportunity):
            raise _not_found("opportunity")
        return opportunity

    def _get(self, gateway: CrmGateway, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = gateway.get_opportunity(opportunity_id)
        if opportunity is None:
            raise _not_found("opportunity")
        gateway.session.refresh(opportunity)
        return opportunity


def _parse_mirror_id(client_id: str) -> tuple[uuid.UUID, uuid.UUID] | None:
    if len(client_id) != 73 or client_id[36] != "-":
        return None
    try:
        return uuid.UUID(client_id[:36]), uuid.UUID(client_id[37:])
    except ValueError:
        return None


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


class ClientService:
    entity_type = "crm.client"

    # -- listing ------------------------------------------------------------

    def list_clients(self, gateway: CrmGateway, actor_user: ActorUser, filters: dict[str, Any]) -> list[ClientRead]:
        contacts = {item.id: item for item in gateway.find_many(CRMContact)}
        rows = [
            row
            for row in self.listing_rows(gateway, contacts)
            if not actor_user.is_restricted
            or actor_user.refers_to(row.architecte_assigne)
            or (row.contact_id in contacts and can_view_contact(actor_user, contacts[row.contact_id]))
        ]
        if filters.get("category"):
            rows = [row for row in rows if row.category == filters["category"]]
        if filters.get("statut_projet"):
            rows = [row for row in rows if row.statut_projet == filters["statut_projet"]]
        query = normalize_text(filters.get("q"))
        if query:
            rows = [row for row in rows if query in normalize_text(row.nom) or query in normalize_text(row.titre)]
        return rows

    def listing_rows(self, gateway: CrmGateway, contacts: dict[uuid.UUID, CRMContact] | None = None) -> list[ClientRead]:
        """Stored rows, then opportunity-derived rows, then contact-derived rows, deduped."""
        contacts = contacts if contacts is not None else {item.id: item for item in gateway.find_many(CRMContact)}
        stored = gateway.find_many(CRMClient, order_by=CRMClient.derniere_maj.desc())
        open_stages: dict[str, str] = {}
        for interval in gateway.find_many(
            CRMClientStageHistory,
            where=[CRMClientStageHistory.ended_at.is_(None)],
            order_by=CRMClientStageHistory.started_at,
        ):
            open_stages[interval.client_id] = interval.stage_name

        rows: list[ClientRead] = [
            self._row(client, open_stages.get(client.id) or client.statut_projet.value) for client in stored
        ]
        stored_ids = {client.id for client in stored}
        mirrored = {client.opportunity_id for client in stored if client.opportunity_id is not None}

        opportunities = gateway.find_many(CRMOpportunity, order_by=CRMOpportunity.created_at.desc())
        for opportunity in opportunities:
            if opportunity.id in mirrored:
                continue
            contact = contacts.get(opportunity.contact_id)
            if contact is None:
                continue
            stage = mirror_status_for_stage(opportunity.pipeline_stage).value
            rows.append(
                ClientRead(
                    id=mirror_client_id(contact.id, opportunity.id),
                    contact_id=contact.id,
                    opportunity_id=opportunity.id,
                    nom=contact.nom,
                    titre=opportunity.titre,
                    telephone=contact.telephone,
                    email=contact.email,
                    ville=contact.ville,
                    adresse=contact.adresse,
                    type_projet=opportunity.type.value,
                    architecte_assigne=opportunity.architecte_assigne or contact.architecte_assigne,
                    statut_projet=stage,
                    category=classify(stage),
                    budget=opportunity.budget,
                    derniere_maj=opportunity.updated_at,
                    origin="opportunity",
                )
            )

        with_opportunities = {opportunity.contact_id for opportunity in opportunities}
        for contact in contacts.values():
            if str(contact.id) in stored_ids or contact.id in with_opportunities:
                continue
            if contact.tag != ContactTag.CLIENT and contact.status != ContactStatus.ACOMPTE_RECU:
                continue
            rows.append(
                ClientRead(
                    id=str(contact.id),
                    contact_id=contact.id,
                    opportunity_id=None,
                    nom=contact.nom,
                    titre=None,
                    telephone=contact.telephone,
                    email=contact.email,
                    ville=contact.ville,
                    adresse=contact.adresse,
                    type_projet=contact.type_bien,
                    architecte_assigne=contact.architecte_assigne,
                    statut_projet=contact.status.value,
                    category=classify(contact.status.value),
                    budget=None,
                    derniere_maj=contact.updated_at,
                    origin="contact",
                )
            )
        return dedupe_clients(rows)

    # -- single client ------------------------------------------------------

    def get_client(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str) -> ClientDetailRead:
        gateway.run_unit(lambda: self.resolve(gateway, actor_user, client_id), operation="client_resolve")
        return self._detail(gateway, client_id)

    def resolve(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        client_id: str,
        *,
        now: datetime | None = None,
    ) -> CRMClient:
        """Load a client row, materializing contact-level and mirror rows on first use."""
        client = gateway.get_client(client_id)
        if client is None:
            client = self._materialize(gateway, actor_user, client_id, now or utcnow())
        contact = gateway.get_contact(client.contact_id) if client.contact_id is not None else None
        if not can_view_client(actor_user, client, contact):
            raise _not_found("client")
        return client

    def _materialize(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str, now: datetime) -> CRMClient:
        mirror_ids = _parse_mirror_id(client_id)
        if mirror_ids is not None:
            contact_id, opportunity_id = mirror_ids
            opportunity = gateway.get_opportunity(opportunity_id)
            if opportunity is None or opportunity.contact_id != contact_id:
                raise _not_found("client")
            mirror.reconcile(gateway, opportunity_id, changed_by=actor_user.user_id, now=now)
            client = gateway.find_client_by_opportunity(opportunity_id)
            if client is None:
                raise _not_found("client")
            return client

        contact_id = _parse_uuid(client_id)
        contact = gateway.get_contact(contact_id) if contact_id is not None else None
        if contact is None:
            raise _not_found("client")
        stage = coerce_stage(contact.status.value) or ProjectStage.QUALIFIE
        client, _ = gateway.upsert_client(
            str(contact.id),
            {
                "contact_id": contact.id,
                "nom": contact.nom,
                "telephone": contact.telephone,
                "email": contact.email,
                "ville": contact.ville,
                "adresse": contact.adresse,
                "type_projet": contact.type_bien,
                "architecte_assigne": contact.architecte_assigne,
                "statut_projet": stage,
                "derniere_maj": now,
                "created_by": actor_user.user_id,
            },
        )
        gateway.add(
            CRMClientStageHistory(client_id=client.id, stage_name=stage.value, started_at=now, changed_by=actor_user.user_id)
        )
        return client

    def change_stage(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        client_id: str,
        dto: ClientStageChangeRequest,
    ) -> ClientDetailRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)

        def unit() -> Decision:
            client = self.resolve(gateway, actor_user, client_id, now=now)
            contact = gateway.get_contact(client.contact_id) if client.contact_id is not None else None
            decision = decide_manual_stage(
                client_snapshot(gateway, client),
                dto.statut_projet,
                contact=contact_snapshot(contact) if contact is not None else None,
            )
            opportunity = gateway.get_opportunity(client.opportunity_id) if client.opportunity_id is not None else None
            target = pipeline_stage_for_client_stage(dto.statut_projet)
            if decision and opportunity is not None and target is not None:
                others = [
                    opportunity_snapshot(item)
                    for item in gateway.opportunities_for_contact(opportunity.contact_id)
                    if item.id != opportunity.id
                ]
                decision.extend(
                    decide_opportunity_update(
                        contact_snapshot(opportunity.contact),
                        opportunity_snapshot(opportunity),
                        {"pipeline_stage": target},
                        others,
                        now=now,
                    )
                )
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="client_stage_change")
        executor.apply_secondary(decision)
        self._publish_transitions(gateway, actor_user, executor.transitions)
        return self._detail(gateway, client_id)

    def historique(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str) -> list[HistoriqueRead]:
        gateway.run_unit(lambda: self.resolve(gateway, actor_user, client_id), operation="client_resolve")
        return [HistoriqueRead.model_validate(item) for item in gateway.historique_for_client(client_id)]

    # -- devis --------------------------------------------------------------

    def list_devis(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str) -> list[DevisRead]:
        gateway.run_unit(lambda: self.resolve(gateway, actor_user, client_id), operation="client_resolve")
        return [DevisRead.model_validate(item) for item in gateway.devis_for_client(client_id)]

    def create_devis(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str, dto: DevisCreate) -> DevisRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)

        def unit() -> tuple[Decision, uuid.UUID]:
            client = self.resolve(gateway, actor_user, client_id, now=now)
            existing = [devis_snapshot(item) for item in gateway.devis_for_client(client.id)]
            snapshot = client_snapshot(gateway, client)
            settled = dto.facture_reglee if dto.statut == DevisStatus.ACCEPTE else False
            devis = gateway.add(
                CRMDevis(
                    client_id=client.id,
                    title=dto.title,
                    montant=dto.montant,
                    statut=dto.statut,
                    facture_reglee=settled,
                    validated_at=now if dto.statut == DevisStatus.ACCEPTE else None,
                    notes=dto.notes,
                    created_by=actor_user.user_id,
                )
            )
            decision = decide_devis_created(snapshot, existing, devis_snapshot(devis))
            executor.apply_primary(decision)
            return decision, devis.id

        decision, devis_id = gateway.run_unit(unit, operation="devis_create")
        executor.apply_secondary(decision)
        self._publish_transitions(gateway, actor_user, executor.transitions)
        _publish(actor_user, "crm.devis.created", {"client_id": client_id, "devis_id": str(devis_id)})
        return self._devis_read(gateway, devis_id)

    def update_devis(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        client_id: str,
        devis_id: uuid.UUID,
        dto: DevisUpdate,
    ) -> DevisRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        plain = {
            key: value
            for key, value in dto.model_dump(exclude_unset=True, include={"title", "montant", "notes"}).items()
            if not (key in {"title", "montant"} and value is None)
        }

        def unit() -> Decision:
            client = self.resolve(gateway, actor_user, client_id, now=now)
            devis = self._load_devis(gateway, client.id, devis_id)
            decision = Decision()
            edited = {key: value for key, value in plain.items() if getattr(devis, key) != value}
            if edited:
                decision.add(UpdateDevis(devis.id, edited))
                decision.add(
                    AppendHistorique(
                        client.id,
                        HistoriqueType.DEVIS,
                        f'Devis "{devis.title}" modifié: {", ".join(sorted(edited))}',
                        metadata={"devisId": str(devis.id), "fields": sorted(edited)},
                    )
                )
            if dto.statut is not None or dto.facture_reglee is not None:
                decision.extend(
                    decide_devis_status(
                        client_snapshot(gateway, client),
                        [devis_snapshot(item) for item in gateway.devis_for_client(client.id)],
                        devis.id,
                        dto.statut or devis.statut,
                        facture_reglee=dto.facture_reglee,
                        now=now,
                    )
                )
            executor.apply_primary(decision)
            return decision

        decision = gateway.run_unit(unit, operation="devis_update")
        executor.apply_secondary(decision)
        self._publish_transitions(gateway, actor_user, executor.transitions)
        if decision:
            _publish(actor_user, "crm.devis.updated", {"client_id": client_id, "devis_id": str(devis_id)})
        return self._devis_read(gateway, devis_id)

    def delete_devis(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str, devis_id: uuid.UUID) -> None:
        executor = EffectExecutor(gateway, actor_user, now=utcnow())

        def unit() -> None:
            client = self.resolve(gateway, actor_user, client_id)
            devis = self._load_devis(gateway, client.id, devis_id)
            title, montant = devis.title, devis.montant
            gateway.delete(devis)
            decision = Decision()
            decision.add(
                AppendHistorique(
                    client.id,
                    HistoriqueType.DEVIS,
                    f'Devis supprimé: "{title}" ({float(montant)} MAD)',
                    metadata={"devisId": str(devis_id)},
                )
            )
            executor.apply_primary(decision)

        gateway.run_unit(unit, operation="devis_delete")
        _publish(actor_user, "crm.devis.deleted", {"client_id": client_id, "devis_id": str(devis_id)})

    # -- payments -----------------------------------------------------------

    def list_payments(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str) -> list[PaymentRead]:
        gateway.run_unit(lambda: self.resolve(gateway, actor_user, client_id), operation="client_resolve")
        return [PaymentRead.model_validate(item) for item in gateway.payments_for_client(client_id)]

    def create_payment(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        client_id: str,
        dto: PaymentCreate,
    ) -> PaymentRead:
        now = utcnow()
        executor = EffectExecutor(gateway, actor_user, now=now)
        payment_id = uuid.uuid4()

        def unit() -> tuple[Decision, CRMClient]:
            client = self.resolve(gateway, actor_user, client_id, now=now)
            contact = gateway.get_contact(client.contact_id) if client.contact_id is not None else None
            opportunities = (
                [opportunity_snapshot(item) for item in gateway.opportunities_for_contact(contact.id)]
                if contact is not None
                else []
            )
            decision = decide_payment(
                client_snapshot(gateway, client),
                contact_snapshot(contact) if contact is not None else None,
                opportunities,
                payment_id=payment_id,
                values=dto.model_dump(),
                now=now,
            )
            executor.apply_primary(decision)
            return decision, client

        decision, client = gateway.run_unit(unit, operation="payment_create")
        executor.apply_secondary(decision)
        self._publish_transitions(gateway, actor_user, executor.transitions)
        payment = gateway.session.get(CRMPayment, payment_id)
        if payment is None:
            raise _not_found("payment")
        _publish(
            actor_user,
            "crm.payment.recorded",
            {
                "client_id": client_id,
                "payment_id": str(payment_id),
                "montant": str(payment.montant),
                "type": payment.type.value,
                "nom": client.nom,
                "architecte_assigne": client.architecte_assigne,
            },
        )
        return PaymentRead.model_validate(payment)

    def delete_payment(self, gateway: CrmGateway, actor_user: ActorUser, client_id: str, payment_id: uuid.UUID) -> None:
        executor = EffectExecutor(gateway, actor_user, now=utcnow())

        def unit() -> None:
            client = self.resolve(gateway, actor_user, client_id)
            payment = gateway.session.get(CRMPayment, payment_id)
            if payment is None or payment.client_id != client.id:
                raise _not_found("payment")
            description = f"Paiement supprimé: {float(payment.montant)} MAD ({payment.methode.value})"
            gateway.delete(payment)
            decision = Decision()
            decision.add(
                AppendHistorique(
                    client.id,
                    HistoriqueType.MODIFICATION,
                    description,
                    metadata={"paymentId": str(payment_id)},
                )
            )
            executor.apply_primary(decision)

        gateway.run_unit(unit, operation="payment_delete")
        _publish(actor_user, "crm.payment.deleted", {"client_id": client_id, "payment_id": str(payment_id)})

    def reconcile_all(self, gateway: CrmGateway, actor_user: ActorUser) -> ReconcileResult:
        return mirror.reconcile_all(gateway, changed_by=actor_user.user_id)

    # -- helpers ------------------------------------------------------------

    def _publish_transitions(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        transitions: list[TransitionClientStage],
    ) -> None:
        for transition in transitions:
            client = gateway.get_client(transition.client_id)
            _publish(
                actor_user,
                "crm.client.stage_changed",
                {
                    "client_id": transition.client_id,
                    "from_stage": transition.from_stage,
                    "to_stage": transition.to_stage.value,
                    "trigger": transition.trigger,
                    "nom": client.nom if client is not None else None,
                    "architecte_assigne": client.architecte_assigne if client is not None else None,
                },
            )

    def _load_devis(self, gateway: CrmGateway, client_id: str, devis_id: uuid.UUID) -> CRMDevis:
        devis = gateway.session.get(CRMDevis, devis_id)
        if devis is None or devis.client_id != client_id:
            raise _not_found("devis")
        return devis

    def _devis_read(self, gateway: CrmGateway, devis_id: uuid.UUID) -> DevisRead:
        devis = gateway.session.get(CRMDevis, devis_id)
        if devis is None:
            raise _not_found("devis")
        gateway.session.refresh(devis)
        return DevisRead.model_validate(devis)

    @staticmethod
    def _row(client: CRMClient, stage: str) -> ClientRead:
        return ClientRead(
            id=client.id,
            contact_id=client.contact_id,
            opportunity_id=client.opportunity_id,
            nom=client.nom,
            titre=client.titre,
            telephone=client.telephone,
            email=client.email,
            ville=client.ville,
            adresse=client.adresse,
            type_projet=client.type_projet,
            architecte_assigne=client.architecte_assigne,
            statut_projet=stage,
            category=classify(stage),
            budget=client.budget,
            derniere_maj=client.derniere_maj,
            origin="client",
        )

    def _detail(self, gateway: CrmGateway, client_id: str) -> ClientDetailRead:
        client = gateway.get_client(client_id)
        if client is None:
            raise _not_found("client")
        gateway.session.refresh(client)
        interval = gateway.open_stage_interval(client.id)
        stage = interval.stage_name if interval is not None else client.statut_projet.value
        duration = None
        if interval is not None:
            duration = (utcnow() - as_aware(interval.started_at)).total_seconds()

        devis = gateway.devis_for_client(client.id)
        payments = gateway.payments_for_client(client.id)
        summary = payment_summary([devis_snapshot(item) for item in devis], [item.montant for item in payments])
        row = self._row(client, stage)
        return ClientDetailRead(
            **row.model_dump(),
            current_stage=stage,
            current_stage_label=stage_label(stage),
            current_stage_duration=format_stage_duration(duration),
            stage_history=[StageIntervalRead.model_validate(item) for item in gateway.stage_history(client.id)],
            devis=[DevisRead.model_validate(item) for item in devis],
            payments=[PaymentRead.model_validate(item) for item in payments],
            payment_summary=PaymentSummaryRead(
                total_accepte=summary.total_accepte,
                total_paye=summary.total_paye,
                reste=summary.reste,
                progression=summary.progression,
            ),
        )


client_service = ClientService()


class UserService:
    def list_users(self, gateway: CrmGateway, role: str | None = None) -> list[UserRead]:
        where: list[Any] = [CRMUser.role == role] if role else []
        return [UserRead.model_validate(item) for item in gateway.find_many(CRMUser, where=where, order_by=CRMUser.name)]

    def create_user(self, gateway: CrmGateway, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        def unit() -> CRMUser:
            if dto.id is not None and gateway.session.get(CRMUser, dto.id) is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user id already exists")
            if dto.email is not None:
                taken = gateway.find_many(CRMUser, where=[func.lower(CRMUser.email) == dto.email.lower()], limit=1)
                if taken:
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already registered")
            values = dto.model_dump(exclude_none=True)
            return gateway.add(CRMUser(**values))

        user = gateway.run_unit(unit, operation="user_create")
        _publish(actor_user, "crm.user.created", {"user_id": user.id, "role": user.role.value})
        return UserRead.model_validate(user)

    def architect_stats(self, gateway: CrmGateway) -> list[ArchitectStatsRead]:
        architects = gateway.find_many(
            CRMUser,
            where=[CRMUser.role == UserRole.ARCHITECT, CRMUser.is_active.is_(True)],
            order_by=CRMUser.name,
        )
        rows = client_service.listing_rows(gateway)
        stats: list[ArchitectStatsRead] = []
        for architect in architects:
            refs = {architect.id, architect.name}
            counts = {category: 0 for category in StageCategory}
            for row in rows:
                if row.architecte_assigne in refs:
                    counts[row.category] += 1
            stats.append(
                ArchitectStatsRead(
                    id=architect.id,
                    name=architect.name,
                    email=architect.email,
                    total_dossiers=sum(counts.values()),
                    en_cours=counts[StageCategory.EN_COURS],
                    termine=counts[StageCategory.TERMINE],
                    en_attente=counts[StageCategory.EN_ATTENTE],
                    excluded=counts[StageCategory.EXCLUDED],
                )
            )
        return stats


class NotificationService:
    def list_notifications(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationRead]:
        where: list[Any] = [CRMNotification.user_id == actor_user.user_id]
        if unread_only:
            where.append(CRMNotification.is_read.is_(False))
        items = gateway.find_many(CRMNotification, where=where, order_by=CRMNotification.created_at.desc(), limit=limit)
        return [NotificationRead.model_validate(item) for item in items]

    def create_notification(
        self,
        gateway: CrmGateway,
        actor_user: ActorUser,
        dto: NotificationCreate,
    ) -> list[NotificationRead]:
        def unit() -> list[CRMNotification]:
            users = gateway.find_users_by_ref(dto.recipient)
            if not users:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="recipient not found")
            rows = [
                notifications.create_for_user(
                    gateway,
                    user,
                    created_by=actor_user.user_id,
                    **dto.model_dump(exclude={"recipient"}),
                )
                for user in users
            ]
            notifications.queue_external(gateway.session, users, rows)
            return rows

        rows = gateway.run_unit(unit, operation="notification_create")
        return [NotificationRead.model_validate(item) for item in rows]

    def mark_read(self, gateway: CrmGateway, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        def unit() -> CRMNotification:
            notification = gateway.session.get(CRMNotification, notification_id)
            if notification is None or notification.user_id != actor_user.user_id:
                raise _not_found("notification")
            return gateway.update(notification, {"is_read": True})

        return NotificationRead.model_validate(gateway.run_unit(unit, operation="notification_read"))

    def mark_all_read(self, gateway: CrmGateway, actor_user: ActorUser) -> int:
        def unit() -> int:
            unread = gateway.find_many(
                CRMNotification,
                where=[CRMNotification.user_id == actor_user.user_id, CRMNotification.is_read.is_(False)],
            )
            for item in unread:
                item.is_read = True
            gateway.session.flush()
            return len(unread)

        return gateway.run_unit(unit, operation="notification_read_all")

    def handle_domain_event(self, gateway: CrmGateway, envelope: dict[str, Any]) -> list[CRMNotification]:
        """Notify the architect of a client when its stage moves or a payment lands."""
        payload = envelope.get("payload") or {}
        architect = payload.get("architecte_assigne")
        client_id = payload.get("client_id")
        if not architect or not client_id:
            return []

        nom = payload.get("nom") or client_id
        if envelope.get("event_type") == "crm.client.stage_changed":
            effect = Notify(
                recipient=architect,
                kind=NotificationKind.STAGE_CHANGED,
                title="Changement d'étape",
                message=(
                    f"Le projet de {nom} est passé de « {stage_label(payload.get('from_stage'))} » "
                    f"à « {stage_label(payload.get('to_stage'))} »"
                ),
                linked_type="client",
                linked_id=client_id,
                linked_name=nom,
            )
        elif envelope.get("event_type") == "crm.payment.recorded":
            effect = Notify(
                recipient=architect,
                kind=NotificationKind.PAYMENT_RECORDED,
                title="Paiement enregistré",
                message=f"Un paiement de {payload.get('montant')} MAD a été enregistré pour {nom}",
                linked_type="client",
                linked_id=client_id,
                linked_name=nom,
                priority=NotificationPriority.LOW,
            )
        else:
            return []

        created_by = envelope.get("actor_user_id")
        return gateway.best_effort(effect.name, lambda: notifications.notify(gateway, effect, created_by=created_by)) or []
