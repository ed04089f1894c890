from __future__ import annotations

from signature8.crm.engine import (
    ClientSnapshot,
    ContactSnapshot,
    DevisSnapshot,
    LeadSnapshot,
    OpportunitySnapshot,
)
from signature8.crm.gateway import CrmGateway
from signature8.crm.models import CRMClient, CRMContact, CRMDevis, CRMLead, CRMOpportunity


def lead_snapshot(lead: CRMLead) -> LeadSnapshot:
    return LeadSnapshot(
        id=lead.id,
        nom=lead.nom,
        telephone=lead.telephone,
        ville=lead.ville,
        type_bien=lead.type_bien,
        source=lead.source,
        statut=lead.statut,
        assigne_a=lead.assigne_a,
        magasin=lead.magasin,
    )


def contact_snapshot(contact: CRMContact) -> ContactSnapshot:
    return ContactSnapshot(
        id=contact.id,
        nom=contact.nom,
        status=contact.status,
        tag=contact.tag,
        ville=contact.ville,
        lead_status=contact.lead_status,
        client_since=contact.client_since,
        architecte_assigne=contact.architecte_assigne,
    )


def opportunity_snapshot(opportunity: CRMOpportunity) -> OpportunitySnapshot:
    return OpportunitySnapshot(
        id=opportunity.id,
        contact_id=opportunity.contact_id,
        titre=opportunity.titre,
        type=opportunity.type,
        statut=opportunity.statut,
        pipeline_stage=opportunity.pipeline_stage,
        budget=opportunity.budget,
        architecte_assigne=opportunity.architecte_assigne,
        won_at=opportunity.won_at,
        created_at=opportunity.created_at,
    )


def client_snapshot(gateway: CrmGateway, client: CRMClient) -> ClientSnapshot:
    interval = gateway.open_stage_interval(client.id)
    return ClientSnapshot(
        id=client.id,
        statut_projet=client.statut_projet,
        open_stage=interval.stage_name if interval is not None else None,
        contact_id=client.contact_id,
        opportunity_id=client.opportunity_id,
        payment_count=len(gateway.payments_for_client(client.id)),
    )


def devis_snapshot(devis: CRMDevis) -> DevisSnapshot:
    return DevisSnapshot(
        id=devis.id,
        title=devis.title,
        statut=devis.statut,
        facture_reglee=devis.facture_reglee,
        montant=devis.montant,
    )
