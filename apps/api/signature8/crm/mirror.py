"""Opportunity mirror rows.

Every write to a ``{contactId}-{opportunityId}`` client row goes through
:func:`reconcile`, which is idempotent and safe to call inline after an
opportunity write or from the periodic sweep.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select

from signature8.crm.engine import decide_mirror_stage, mirror_client_id
from signature8.crm.gateway import CrmGateway
from signature8.crm.models import CRMClient, CRMClientStageHistory, CRMOpportunity, utcnow
from signature8.crm.schemas import ReconcileResult
from signature8.crm.snapshots import client_snapshot, opportunity_snapshot
from signature8.metrics import observe_mirror_reconcile, observe_stage_transition
from signature8.otel import crm_span


logger = logging.getLogger("signature8.crm.mirror")


def _denormalized(opportunity: CRMOpportunity) -> dict[str, Any]:
    contact = opportunity.contact
    return {
        "contact_id": contact.id,
        "opportunity_id": opportunity.id,
        "nom": contact.nom,
        "titre": opportunity.titre,
        "telephone": contact.telephone,
        "email": contact.email,
        "ville": contact.ville,
        "adresse": contact.adresse,
        "type_projet": opportunity.type.value,
        "architecte_assigne": opportunity.architecte_assigne or contact.architecte_assigne,
        "budget": opportunity.budget,
    }


def reconcile(
    gateway: CrmGateway,
    opportunity_id: uuid.UUID,
    *,
    changed_by: str | None = None,
    now: datetime | None = None,
) -> str:
    """Bring the mirror row of one opportunity in line with it.

    Returns ``created``, ``updated``, ``unchanged`` or ``removed``.
    """
    now = now or utcnow()
    opportunity = gateway.get_opportunity(opportunity_id)

    if opportunity is None:
        stale = gateway.find_client_by_opportunity(opportunity_id)
        if stale is None:
            return _done("unchanged", opportunity_id)
        gateway.delete_client(stale)
        return _done("removed", opportunity_id)

    client_id = mirror_client_id(opportunity.contact_id, opportunity.id)
    existing = gateway.get_client(client_id) or gateway.find_client_by_opportunity(opportunity.id)
    values = _denormalized(opportunity)

    snapshot = client_snapshot(gateway, existing) if existing is not None else None
    initial_stage, transition_to = decide_mirror_stage(opportunity_snapshot(opportunity), snapshot)

    if existing is None:
        client, _ = gateway.upsert_client(
            client_id,
            {**values, "statut_projet": initial_stage, "derniere_maj": now, "created_by": changed_by},
        )
        gateway.add(
            CRMClientStageHistory(
                client_id=client.id,
                stage_name=initial_stage.value,
                started_at=now,
                changed_by=changed_by,
            )
        )
        return _done("created", opportunity_id)

    drifted = {key: value for key, value in values.items() if getattr(existing, key) != value}
    if drifted:
        gateway.update(existing, {**drifted, "derniere_maj": now})
    if transition_to is not None:
        gateway.transition_client_stage(existing, transition_to, changed_by=changed_by, now=now)
        observe_stage_transition(transition_to.value, "mirror")
        logger.info(
            "crm.mirror_stage_forced",
            extra={"entity_type": "client", "entity_id": existing.id, "to_stage": transition_to.value},
        )
    if drifted or transition_to is not None:
        return _done("updated", opportunity_id)
    return _done("unchanged", opportunity_id)


def reconcile_all(gateway: CrmGateway, *, changed_by: str | None = None) -> ReconcileResult:
    """Sweep every opportunity plus mirror rows whose opportunity is gone."""
    with crm_span("crm.mirror_sweep", changed_by=changed_by) as span:
        result = _sweep(gateway, changed_by=changed_by)
        for key, value in result.model_dump().items():
            span.set_attribute(f"crm.mirror.{key}", value)
        return result


def _sweep(gateway: CrmGateway, *, changed_by: str | None) -> ReconcileResult:
    opportunity_ids = set(gateway.session.scalars(select(CRMOpportunity.id)))
    mirrored = set(gateway.session.scalars(select(CRMClient.opportunity_id).where(CRMClient.opportunity_id.is_not(None))))
    orphaned = mirrored - opportunity_ids

    counts = {"created": 0, "updated": 0, "unchanged": 0, "removed": 0, "failed": 0}
    for opportunity_id in sorted(opportunity_ids | orphaned, key=str):
        outcome = gateway.best_effort(
            "reconcile_mirror",
            lambda opportunity_id=opportunity_id: reconcile(gateway, opportunity_id, changed_by=changed_by),
        )
        if outcome is None:
            counts["failed"] += 1
            continue
        counts["updated" if outcome == "removed" else outcome] += 1

    processed = len(opportunity_ids | orphaned)
    logger.info("crm.mirror_sweep", extra={"entity_type": "client", "entity_id": str(processed)})
    return ReconcileResult(
        processed=processed,
        created=counts["created"],
        updated=counts["updated"],
        unchanged=counts["unchanged"],
        failed=counts["failed"],
    )


def _done(result: str, opportunity_id: uuid.UUID) -> str:
    observe_mirror_reconcile(result)
    logger.debug("crm.mirror_reconciled", extra={"entity_type": "opportunity", "entity_id": str(opportunity_id)})
    return result
