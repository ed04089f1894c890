from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from signature8.crm.enums import (
    ContactStatus,
    ContactTag,
    DevisStatus,
    HistoriqueType,
    NotificationKind,
    NotificationPriority,
    OpportunityStage,
    OpportunityStatus,
    OpportunityType,
    PaymentMethod,
    PaymentType,
    ProjectStage,
    StageCategory,
    TimelineEventType,
    UserRole,
)


class LeadCreate(BaseModel):
    nom: str = Field(min_length=1)
    telephone: str = Field(min_length=1)
    ville: str | None = None
    type_bien: str | None = None
    source: str | None = None
    statut: str = "nouveau"
    assigne_a: str | None = None
    magasin: str | None = None


class LeadUpdate(BaseModel):
    nom: str | None = Field(default=None, min_length=1)
    telephone: str | None = Field(default=None, min_length=1)
    ville: str | None = None
    type_bien: str | None = None
    source: str | None = None
    statut: str | None = None
    assigne_a: str | None = None
    magasin: str | None = None


class LeadNoteCreate(BaseModel):
    content: str = Field(min_length=1)


class LeadNoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    content: str
    author: str | None
    created_at: datetime


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    nom: str
    telephone: str
    ville: str | None
    type_bien: str | None
    source: str | None
    statut: str
    assigne_a: str | None
    magasin: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    notes: list[LeadNoteRead] = Field(default_factory=list)


class LeadConvertRequest(BaseModel):
    """Caller overrides for the contact produced by a conversion.

    ``status`` is accepted for compatibility but never applied: a converted
    contact always starts at ``qualifie``.
    """

    architecte_assigne: str | None = None
    nom: str | None = None
    telephone: str | None = None
    email: str | None = None
    ville: str | None = None
    adresse: str | None = None
    notes: str | None = None
    magasin: str | None = None
    status: str | None = None


class ContactConvertLeadRequest(LeadConvertRequest):
    lead_id: UUID


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    nom: str
    telephone: str
    email: str | None
    ville: str | None
    adresse: str | None
    source: str | None
    type_bien: str | None
    tag: ContactTag
    status: ContactStatus
    lead_status: ContactStatus | None
    architecte_assigne: str | None
    lead_id: UUID | None
    magasin: str | None
    notes: str | None
    invited_user_ids: list[str]
    client_since: datetime | None
    created_by: str | None
    converted_by: str | None
    created_at: datetime
    updated_at: datetime


class ContactUpdate(BaseModel):
    nom: str | None = Field(default=None, min_length=1)
    telephone: str | None = Field(default=None, min_length=1)
    email: str | None = None
    ville: str | None = None
    adresse: str | None = None
    architecte_assigne: str | None = None
    magasin: str | None = None
    notes: str | None = None
    invited_user_ids: list[str] | None = None


class ContactMarkLostRequest(BaseModel):
    reason: str | None = None


class TimelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    opportunity_id: UUID | None
    event_type: TimelineEventType
    title: str
    description: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    author: str | None
    created_at: datetime


class OpportunityCreate(BaseModel):
    contact_id: UUID | None = None
    titre: str | None = None
    type: OpportunityType
    statut: OpportunityStatus | None = None
    pipeline_stage: OpportunityStage | None = None
    budget: Decimal | None = Field(default=None, ge=0)
    description: str | None = None
    architecte_assigne: str | None = None
    date_cloture_attendue: datetime | None = None
    notes: str | None = None


class OpportunityUpdate(BaseModel):
    titre: str | None = None
    type: OpportunityType | None = None
    statut: OpportunityStatus | None = None
    pipeline_stage: OpportunityStage | None = None
    budget: Decimal | None = Field(default=None, ge=0)
    description: str | None = None
    architecte_assigne: str | None = None
    date_cloture_attendue: datetime | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    titre: str
    type: OpportunityType
    statut: OpportunityStatus
    pipeline_stage: OpportunityStage
    budget: Decimal | None
    description: str | None
    architecte_assigne: str | None
    date_cloture_attendue: datetime | None
    notes: str | None
    won_at: datetime | None
    lost_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class DepositRequest(BaseModel):
    """Both fields are optional at the edge so a missing one maps to 400."""

    montant: Decimal | None = Field(default=None, gt=0)
    methode: PaymentMethod | None = None
    reference: str | None = None
    description: str | None = None
    date: datetime | None = None


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contact_id: UUID | None
    opportunity_id: UUID | None
    nom: str
    titre: str | None
    telephone: str | None
    email: str | None
    ville: str | None
    adresse: str | None
    type_projet: str | None
    architecte_assigne: str | None
    statut_projet: str
    category: StageCategory = StageCategory.EN_ATTENTE
    budget: Decimal | None
    derniere_maj: datetime | None = None
    origin: Literal["client", "opportunity", "contact"] = "client"

    @property
    def contact_name(self) -> str:
        return self.nom

    @property
    def title(self) -> str | None:
        return self.titre


class StageIntervalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage_name: str
    started_at: datetime
    ended_at: datetime | None
    duration_seconds: int | None
    changed_by: str | None


class DevisCreate(BaseModel):
    title: str = Field(min_length=1)
    montant: Decimal = Field(ge=0)
    statut: DevisStatus = DevisStatus.EN_ATTENTE
    facture_reglee: bool = False
    notes: str | None = None


class DevisUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    montant: Decimal | None = Field(default=None, ge=0)
    statut: DevisStatus | None = None
    facture_reglee: bool | None = None
    notes: str | None = None


class DevisRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: str
    title: str
    montant: Decimal
    statut: DevisStatus
    facture_reglee: bool
    validated_at: datetime | None
    notes: str | None
    created_by: str | None
    created_at: datetime


class PaymentCreate(BaseModel):
    montant: Decimal = Field(gt=0)
    methode: PaymentMethod
    date: datetime | None = None
    reference: str | None = None
    description: str | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: str
    montant: Decimal
    date: datetime
    methode: PaymentMethod
    reference: str | None
    description: str | None
    type: PaymentType
    created_by: str | None
    created_at: datetime


class PaymentSummaryRead(BaseModel):
    total_accepte: Decimal
    total_paye: Decimal
    reste: Decimal
    progression: int


class ClientDetailRead(ClientRead):
    current_stage: str
    current_stage_label: str
    current_stage_duration: str
    stage_history: list[StageIntervalRead] = Field(default_factory=list)
    devis: list[DevisRead] = Field(default_factory=list)
    payments: list[PaymentRead] = Field(default_factory=list)
    payment_summary: PaymentSummaryRead


class ClientStageChangeRequest(BaseModel):
    statut_projet: ProjectStage


class HistoriqueRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: str
    type: HistoriqueType
    description: str
    auteur: str | None
    previous_status: str | None
    new_status: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ReconcileResult(BaseModel):
    processed: int
    created: int
    updated: int
    unchanged: int
    failed: int


class NotificationCreate(BaseModel):
    recipient: str = Field(min_length=1)
    kind: NotificationKind = NotificationKind.SYSTEM
    priority: NotificationPriority = NotificationPriority.MEDIUM
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    linked_type: str | None = None
    linked_id: str | None = None
    linked_name: str | None = None
    send_whatsapp: bool = False
    send_sms: bool = False
    send_email: bool = False


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    kind: NotificationKind
    priority: NotificationPriority
    title: str
    message: str
    linked_type: str | None
    linked_id: str | None
    linked_name: str | None
    is_read: bool
    send_whatsapp: bool
    send_sms: bool
    send_email: bool
    created_at: datetime


class NotificationsMarkedRead(BaseModel):
    updated: int


class UserCreate(BaseModel):
    id: str | None = None
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    role: UserRole
    is_active: bool = True


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None
    phone: str | None
    role: UserRole
    is_active: bool
    created_at: datetime


class ArchitectStatsRead(BaseModel):
    id: str
    name: str
    email: str | None
    total_dossiers: int
    en_cours: int
    termine: int
    en_attente: int
    excluded: int
