from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response

from signature8.context import get_correlation_id
from signature8.core.auth import AuthUser, get_current_user as get_auth_user
from signature8.core.rbac import permissions_for_role
from signature8.crm.enums import ContactStatus, ContactTag, OpportunityStage, OpportunityStatus, StageCategory
from signature8.crm.gateway import CrmGateway, get_gateway
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
    NotificationsMarkedRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    PaymentCreate,
    PaymentRead,
    ReconcileResult,
    TimelineRead,
    UserCreate,
    UserRead,
)
from signature8.crm.service import (
    ActorUser,
    ClientService,
    ContactService,
    LeadService,
    NotificationService,
    OpportunityService,
    UserService,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
clients_router = APIRouter(prefix="/api/crm", tags=["crm.clients"])
notifications_router = APIRouter(prefix="/api/crm", tags=["crm.notifications"])
users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])
lead_service = LeadService()
contact_service = ContactService()
opportunity_service = OpportunityService()
client_service = ClientService()
notification_service = NotificationService()
user_service = UserService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.user_id,
        role=auth_user.role,
        permissions=permissions_for_role(auth_user.role),
        name=auth_user.name,
        email=auth_user.email,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


# -- leads -------------------------------------------------------------------


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    statut: str | None = Query(default=None),
    source: str | None = Query(default=None),
    q: str | None = Query(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(gateway, user, {"statut": statut, "source": source, "q": q})
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(gateway, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(gateway, user, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(gateway, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(gateway, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/notes", response_model=LeadNoteRead, status_code=status.HTTP_201_CREATED)
def add_lead_note(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadNoteCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> LeadNoteRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.add_note(gateway, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_note_create_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=ContactRead)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest | None = Body(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_service.convert_lead(gateway, user, lead_id, dto or LeadConvertRequest())
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_convert_failed")


# -- contacts ----------------------------------------------------------------


@contacts_router.post("/contacts/convert-lead", response_model=ContactRead)
def convert_lead_to_contact(
    request: Request,
    dto: ContactConvertLeadRequest,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_service.convert_lead(gateway, user, dto.lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_convert_failed")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    tag: ContactTag | None = Query(default=None),
    status_filter: ContactStatus | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(gateway, user, {"tag": tag, "status": status_filter, "q": q})
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_list_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(gateway, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_get_failed")


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.update")
        return contact_service.update_contact(gateway, user, contact_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_update_failed")


@contacts_router.post("/contacts/{contact_id}/mark-lost", response_model=ContactRead)
def mark_contact_lost(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactMarkLostRequest | None = Body(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.update")
        return contact_service.mark_lost(gateway, user, contact_id, dto or ContactMarkLostRequest())
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_mark_lost_failed")


@contacts_router.get("/contacts/{contact_id}/timeline", response_model=list[TimelineRead])
def get_contact_timeline(
    request: Request,
    contact_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[TimelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.timeline(gateway, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_timeline_failed")


@contacts_router.get("/contacts/{contact_id}/opportunities", response_model=list[OpportunityRead])
def list_contact_opportunities(
    request: Request,
    contact_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_for_contact(gateway, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_list_failed")


@contacts_router.post(
    "/contacts/{contact_id}/opportunities",
    response_model=OpportunityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_contact_opportunity(
    request: Request,
    contact_id: uuid.UUID,
    dto: OpportunityCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(gateway, user, dto, contact_id=contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_create_failed")


# -- opportunities -----------------------------------------------------------


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    contact_id: uuid.UUID | None = Query(default=None),
    statut: OpportunityStatus | None = Query(default=None),
    pipeline_stage: OpportunityStage | None = Query(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            gateway,
            user,
            {"contact_id": contact_id, "statut": statut, "pipeline_stage": pipeline_stage},
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(gateway, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(gateway, user, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.update")
        return opportunity_service.update_opportunity(gateway, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_update_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.opportunities.delete")
        opportunity_service.delete_opportunity(gateway, user, opportunity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/acompte-recu", response_model=OpportunityRead)
def record_opportunity_deposit(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: DepositRequest,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.payments.create")
        return opportunity_service.record_deposit(gateway, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_deposit_failed")


# -- clients -----------------------------------------------------------------


@clients_router.get("/clients", response_model=list[ClientRead])
def list_clients(
    request: Request,
    category: StageCategory | None = Query(default=None),
    statut_projet: str | None = Query(default=None),
    q: str | None = Query(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.list_clients(
            gateway,
            user,
            {"category": category, "statut_projet": statut_projet, "q": q},
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_list_failed")


@clients_router.post("/clients/reconcile", response_model=ReconcileResult)
def reconcile_clients(
    request: Request,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ReconcileResult | JSONResponse:
    try:
        require_permission(user, "crm.clients.reconcile")
        return client_service.reconcile_all(gateway, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_reconcile_failed")


@clients_router.get("/clients/{client_id}", response_model=ClientDetailRead)
def get_client(
    request: Request,
    client_id: str,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ClientDetailRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.get_client(gateway, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_get_failed")


@clients_router.post("/clients/{client_id}/stage", response_model=ClientDetailRead)
def change_client_stage(
    request: Request,
    client_id: str,
    dto: ClientStageChangeRequest,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> ClientDetailRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.update")
        return client_service.change_stage(gateway, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_stage_change_failed")


@clients_router.get("/clients/{client_id}/historique", response_model=list[HistoriqueRead])
def get_client_historique(
    request: Request,
    client_id: str,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[HistoriqueRead] | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.historique(gateway, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_historique_failed")


@clients_router.get("/clients/{client_id}/devis", response_model=list[DevisRead])
def list_client_devis(
    request: Request,
    client_id: str,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[DevisRead] | JSONResponse:
    try:
        require_permission(user, "crm.devis.read")
        return client_service.list_devis(gateway, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_devis_list_failed")


@clients_router.post("/clients/{client_id}/devis", response_model=DevisRead, status_code=status.HTTP_201_CREATED)
def create_client_devis(
    request: Request,
    client_id: str,
    dto: DevisCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> DevisRead | JSONResponse:
    try:
        require_permission(user, "crm.devis.create")
        return client_service.create_devis(gateway, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_devis_create_failed")


@clients_router.patch("/clients/{client_id}/devis/{devis_id}", response_model=DevisRead)
def update_client_devis(
    request: Request,
    client_id: str,
    devis_id: uuid.UUID,
    dto: DevisUpdate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> DevisRead | JSONResponse:
    try:
        require_permission(user, "crm.devis.update")
        return client_service.update_devis(gateway, user, client_id, devis_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_devis_update_failed")


@clients_router.delete("/clients/{client_id}/devis/{devis_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client_devis(
    request: Request,
    client_id: str,
    devis_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.devis.delete")
        client_service.delete_devis(gateway, user, client_id, devis_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_devis_delete_failed")


@clients_router.get("/clients/{client_id}/payments", response_model=list[PaymentRead])
def list_client_payments(
    request: Request,
    client_id: str,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[PaymentRead] | JSONResponse:
    try:
        require_permission(user, "crm.payments.read")
        return client_service.list_payments(gateway, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_payment_list_failed")


@clients_router.post("/clients/{client_id}/payments", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
def create_client_payment(
    request: Request,
    client_id: str,
    dto: PaymentCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> PaymentRead | JSONResponse:
    try:
        require_permission(user, "crm.payments.create")
        return client_service.create_payment(gateway, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_payment_create_failed")


@clients_router.delete("/clients/{client_id}/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client_payment(
    request: Request,
    client_id: str,
    payment_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.payments.delete")
        client_service.delete_payment(gateway, user, client_id, payment_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_payment_delete_failed")


# -- notifications -----------------------------------------------------------


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "crm.notifications.read")
        return notification_service.list_notifications(gateway, user, unread_only=unread_only, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_notification_list_failed")


@notifications_router.post(
    "/notifications",
    response_model=list[NotificationRead],
    status_code=status.HTTP_201_CREATED,
)
def create_notification(
    request: Request,
    dto: NotificationCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "crm.notifications.create")
        return notification_service.create_notification(gateway, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_notification_create_failed")


@notifications_router.post("/notifications/read-all", response_model=NotificationsMarkedRead)
def mark_all_notifications_read(
    request: Request,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> NotificationsMarkedRead | JSONResponse:
    try:
        require_permission(user, "crm.notifications.read")
        return NotificationsMarkedRead(updated=notification_service.mark_all_read(gateway, user))
    except HTTPException as exc:
        return _failed(request, exc, "crm_notification_read_failed")


@notifications_router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        require_permission(user, "crm.notifications.read")
        return notification_service.mark_read(gateway, user, notification_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_notification_read_failed")


# -- users -------------------------------------------------------------------


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    request: Request,
    role: str | None = Query(default=None),
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        require_permission(user, "crm.users.read")
        return user_service.list_users(gateway, role)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_list_failed")


@users_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_permission(user, "crm.users.create")
        return user_service.create_user(gateway, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_create_failed")


@users_router.get("/architects", response_model=list[ArchitectStatsRead])
def list_architect_stats(
    request: Request,
    gateway: CrmGateway = Depends(get_gateway),
    user: ActorUser = Depends(get_current_user),
) -> list[ArchitectStatsRead] | JSONResponse:
    try:
        require_permission(user, "crm.architects.read")
        return user_service.architect_stats(gateway)
    except HTTPException as exc:
        return _failed(request, exc, "crm_architect_stats_failed")
