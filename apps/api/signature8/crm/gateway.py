from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from fastapi import Depends, HTTPException, status
from sqlalchemy import Select, delete, select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from signature8.core.config import get_settings
from signature8.core.database import Base, get_db
from signature8.crm.enums import ProjectStage
from signature8.crm.models import (
    CRMClient,
    CRMClientStageHistory,
    CRMContact,
    CRMDevis,
    CRMHistorique,
    CRMLead,
    CRMNote,
    CRMOpportunity,
    CRMPayment,
    CRMTimeline,
    CRMUser,
    as_aware,
)
from signature8.metrics import observe_db_retry, observe_secondary_effect_failure
from signature8.otel import crm_span


logger = logging.getLogger("signature8.crm.gateway")

T = TypeVar("T")
M = TypeVar("M", bound=Base)


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def backoff_delays(attempts: int, base_delay: float, max_delay: float) -> list[float]:
    """Delays slept between attempts: base, 2*base, 4*base... each capped."""
    return [min(base_delay * (2**index), max_delay) for index in range(max(attempts - 1, 0))]


class CrmGateway:
    """Persistence gateway handed to the orchestration services.

    Wraps one request-scoped session. Primary writes go through
    :meth:`run_unit`, which commits and retries the whole unit on transient
    database errors. Secondary writes go through :meth:`best_effort` once the
    primary unit is committed; each one commits or rolls back on its own.
    """

    def __init__(self, session: Session, sleep: Callable[[float], None] = time.sleep) -> None:
        self.session = session
        self._sleep = sleep

    # -- unit of work -------------------------------------------------------

    def run_unit(self, unit: Callable[[], T], *, operation: str) -> T:
        with crm_span("crm.unit_of_work", operation=operation):
            return self._run_unit(unit, operation=operation)

    def _run_unit(self, unit: Callable[[], T], *, operation: str) -> T:
        settings = get_settings()
        attempts = max(settings.db_retry_attempts, 1)
        delays = backoff_delays(attempts, settings.db_retry_base_delay_seconds, settings.db_retry_max_delay_seconds)

        for attempt in range(1, attempts + 1):
            try:
                result = unit()
                self.session.commit()
            except HTTPException:
                self.session.rollback()
                raise
            except (OperationalError, DBAPIError) as exc:
                self.session.rollback()
                if not is_transient(exc):
                    raise
                if attempt == attempts:
                    observe_db_retry("exhausted")
                    logger.error(
                        "crm.retry_exhausted",
                        extra={"effect": operation, "attempt": attempt, "error": str(exc)},
                    )
                    raise HTTPException(
                        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                        detail="database temporarily unavailable",
                    ) from exc
                delay = delays[attempt - 1]
                observe_db_retry("retried")
                logger.warning(
                    "crm.retry",
                    extra={"effect": operation, "attempt": attempt, "delay_seconds": delay, "error": str(exc)},
                )
                self._sleep(delay)
            else:
                return result
        raise AssertionError("unreachable")

    def best_effort(self, name: str, fn: Callable[[], T]) -> T | None:
        try:
            result = fn()
            self.session.commit()
            return result
        except Exception as exc:
            self.session.rollback()
            observe_secondary_effect_failure(name)
            logger.warning("crm.secondary_effect_failed", extra={"effect": name, "error": str(exc)})
            return None

    # -- generic ------------------------------------------------------------

    def add(self, instance: M) -> M:
        self.session.add(instance)
        self.session.flush()
        return instance

    def delete(self, instance: Base) -> None:
        self.session.delete(instance)
        self.session.flush()

    def update(self, instance: M, changes: dict[str, Any]) -> M:
        for key, value in changes.items():
            setattr(instance, key, value)
        self.session.add(instance)
        self.session.flush()
        return instance

    def find_many(
        self,
        model: type[M],
        *,
        where: Iterable[Any] = (),
        order_by: Any = None,
        limit: int | None = None,
    ) -> list[M]:
        query: Select[Any] = select(model)
        for clause in where:
            query = query.where(clause)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.scalars(query))

    # -- entities -----------------------------------------------------------

    def get_lead(self, lead_id: uuid.UUID) -> CRMLead | None:
        return self.session.get(CRMLead, lead_id)

    def get_contact(self, contact_id: uuid.UUID) -> CRMContact | None:
        return self.session.get(CRMContact, contact_id)

    def find_contact_by_lead(self, lead_id: uuid.UUID) -> CRMContact | None:
        return self.session.scalar(select(CRMContact).where(CRMContact.lead_id == lead_id))

    def get_opportunity(self, opportunity_id: uuid.UUID) -> CRMOpportunity | None:
        return self.session.get(CRMOpportunity, opportunity_id)

    def opportunities_for_contact(self, contact_id: uuid.UUID) -> list[CRMOpportunity]:
        return self.find_many(
            CRMOpportunity,
            where=[CRMOpportunity.contact_id == contact_id],
            order_by=CRMOpportunity.created_at,
        )

    def get_client(self, client_id: str) -> CRMClient | None:
        return self.session.get(CRMClient, client_id)

    def find_client_by_opportunity(self, opportunity_id: uuid.UUID) -> CRMClient | None:
        return self.session.scalar(select(CRMClient).where(CRMClient.opportunity_id == opportunity_id))

    def upsert_client(self, client_id: str, values: dict[str, Any]) -> tuple[CRMClient, bool]:
        client = self.get_client(client_id)
        if client is None:
            client = CRMClient(id=client_id, **values)
            self.add(client)
            return client, True
        return self.update(client, values), False

    def open_stage_interval(self, client_id: str) -> CRMClientStageHistory | None:
        return self.session.scalar(
            select(CRMClientStageHistory)
            .where(CRMClientStageHistory.client_id == client_id, CRMClientStageHistory.ended_at.is_(None))
            .order_by(CRMClientStageHistory.started_at.desc())
            .limit(1)
        )

    def open_stage_intervals(self, client_id: str) -> list[CRMClientStageHistory]:
        return self.find_many(
            CRMClientStageHistory,
            where=[CRMClientStageHistory.client_id == client_id, CRMClientStageHistory.ended_at.is_(None)],
        )

    def stage_history(self, client_id: str) -> list[CRMClientStageHistory]:
        # closed intervals sort ahead of the open one they share a timestamp with
        query = (
            select(CRMClientStageHistory)
            .where(CRMClientStageHistory.client_id == client_id)
            .order_by(CRMClientStageHistory.started_at, CRMClientStageHistory.ended_at.is_(None))
        )
        return list(self.session.scalars(query))

    def transition_client_stage(
        self,
        client: CRMClient,
        to_stage: ProjectStage,
        *,
        changed_by: str | None,
        now: datetime,
    ) -> CRMClientStageHistory:
        """Close every open interval, open one for ``to_stage`` and move the row."""
        for interval in self.open_stage_intervals(client.id):
            interval.ended_at = now
            interval.duration_seconds = max(int((now - as_aware(interval.started_at)).total_seconds()), 0)
        client.statut_projet = to_stage
        client.derniere_maj = now
        self.session.add(client)
        return self.add(
            CRMClientStageHistory(client_id=client.id, stage_name=to_stage.value, started_at=now, changed_by=changed_by)
        )

    def devis_for_client(self, client_id: str) -> list[CRMDevis]:
        return self.find_many(CRMDevis, where=[CRMDevis.client_id == client_id], order_by=CRMDevis.created_at)

    def payments_for_client(self, client_id: str) -> list[CRMPayment]:
        return self.find_many(CRMPayment, where=[CRMPayment.client_id == client_id], order_by=CRMPayment.date)

    def historique_for_client(self, client_id: str) -> list[CRMHistorique]:
        return self.find_many(
            CRMHistorique,
            where=[CRMHistorique.client_id == client_id],
            order_by=CRMHistorique.created_at.desc(),
        )

    def delete_client(self, client: CRMClient) -> None:
        """Drop a client row with its stage intervals, quotes, payments and historique."""
        for model in (CRMClientStageHistory, CRMDevis, CRMPayment, CRMHistorique):
            self.session.execute(delete(model).where(model.client_id == client.id))
        self.delete(client)

    def timeline_for_contact(self, contact_id: uuid.UUID) -> list[CRMTimeline]:
        return self.find_many(
            CRMTimeline,
            where=[CRMTimeline.contact_id == contact_id],
            order_by=CRMTimeline.created_at.desc(),
        )

    def add_notes(self, notes: Iterable[CRMNote]) -> int:
        rows = list(notes)
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def existing_note_refs(self, refs: Iterable[str]) -> set[str]:
        values = list(refs)
        if not values:
            return set()
        return set(self.session.scalars(select(CRMNote.source_ref).where(CRMNote.source_ref.in_(values))))

    def find_users_by_ref(self, ref: str) -> list[CRMUser]:
        """Resolve an id-or-name reference to active users."""
        by_id = self.session.get(CRMUser, ref)
        if by_id is not None:
            return [by_id] if by_id.is_active else []
        return self.find_many(CRMUser, where=[CRMUser.name == ref, CRMUser.is_active.is_(True)])


def get_gateway(db: Session = Depends(get_db)) -> CrmGateway:
    return CrmGateway(db)
