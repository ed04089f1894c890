import logging
from typing import Any

from signature8.core.celery_app import celery_app
from signature8.core.database import SessionLocal
from signature8.crm.channels import Delivery, deliver
from signature8.crm.gateway import CrmGateway
from signature8.crm.mirror import reconcile_all

logger = logging.getLogger("signature8.tasks")


@celery_app.task(name="signature8.tasks.reconcile_mirrors")
def reconcile_mirrors() -> dict[str, int]:
    session = SessionLocal()
    try:
        result = reconcile_all(CrmGateway(session), changed_by="system")
    finally:
        session.close()
    logger.info("crm.mirror_sweep_task", extra={"effect": "reconcile_mirrors", "entity_id": str(result.processed)})
    return result.model_dump()


@celery_app.task(name="signature8.tasks.deliver_notification")
def deliver_notification(payload: dict[str, Any]) -> bool:
    return deliver(Delivery(**payload))
