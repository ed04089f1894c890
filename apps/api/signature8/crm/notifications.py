"""In-app notifications plus outbound WhatsApp, SMS and email delivery.

Outbound deliveries are parked on the session and handed to the
``deliver_notification`` Celery task only once the in-app rows commit.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from signature8 import tasks
from signature8.core.config import Settings, get_settings
from signature8.crm.channels import Delivery, build_deliveries
from signature8.crm.engine import Notify
from signature8.crm.enums import NotificationPriority
from signature8.crm.gateway import CrmGateway
from signature8.crm.models import CRMNotification, CRMUser


logger = logging.getLogger("signature8.crm.notifications")

_PENDING_KEY = "crm.pending_deliveries"

_CHANNELS_BY_PRIORITY: dict[NotificationPriority, tuple[bool, bool, bool]] = {
    # (whatsapp, sms, email)
    NotificationPriority.HIGH: (True, True, True),
    NotificationPriority.MEDIUM: (True, False, True),
    NotificationPriority.LOW: (False, False, False),
}


def create_for_user(
    gateway: CrmGateway,
    user: CRMUser,
    *,
    kind: Any,
    title: str,
    message: str,
    priority: NotificationPriority = NotificationPriority.MEDIUM,
    linked_type: str | None = None,
    linked_id: str | None = None,
    linked_name: str | None = None,
    send_whatsapp: bool = False,
    send_sms: bool = False,
    send_email: bool = False,
    created_by: str | None = None,
) -> CRMNotification:
    return gateway.add(
        CRMNotification(
            user_id=user.id,
            kind=kind,
            priority=priority,
            title=title,
            message=message,
            linked_type=linked_type,
            linked_id=linked_id,
            linked_name=linked_name,
            send_whatsapp=send_whatsapp,
            send_sms=send_sms,
            send_email=send_email,
            created_by=created_by,
        )
    )


def queue_external(
    session: Session,
    users: list[CRMUser],
    notifications: list[CRMNotification],
    settings: Settings | None = None,
) -> list[Delivery]:
    """Park the outbound deliveries of ``notifications`` until ``session`` commits."""
    settings = settings or get_settings()
    if not settings.notifications_external_enabled:
        return []
    deliveries: list[Delivery] = []
    for user, notification in zip(users, notifications):
        deliveries.extend(build_deliveries(user, notification, settings))
    session.info.setdefault(_PENDING_KEY, []).extend(deliveries)
    return deliveries


@event.listens_for(Session, "after_commit")
def _enqueue_pending_deliveries(session: Session) -> None:
    for delivery in session.info.pop(_PENDING_KEY, []):
        try:
            tasks.deliver_notification.delay(asdict(delivery))
        except Exception as exc:
            logger.warning(
                "crm.notification_enqueue_failed",
                extra={"channel": delivery.channel, "recipient_id": delivery.recipient_id, "error": str(exc)},
            )


@event.listens_for(Session, "after_rollback")
def _drop_pending_deliveries(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


def notify(gateway: CrmGateway, effect: Notify, *, created_by: str | None = None) -> list[CRMNotification]:
    """Write the in-app rows for every user ``effect.recipient`` names, then queue the fan-out."""
    users = gateway.find_users_by_ref(effect.recipient)
    if not users:
        logger.info("crm.notification_recipient_unknown", extra={"recipient_id": effect.recipient})
        return []

    whatsapp, sms, email = _CHANNELS_BY_PRIORITY[effect.priority]
    rows = [
        create_for_user(
            gateway,
            user,
            kind=effect.kind,
            title=effect.title,
            message=effect.message,
            priority=effect.priority,
            linked_type=effect.linked_type,
            linked_id=effect.linked_id,
            linked_name=effect.linked_name,
            send_whatsapp=whatsapp,
            send_sms=sms,
            send_email=email,
            created_by=created_by,
        )
        for user in users
    ]
    queue_external(gateway.session, users, rows)
    return rows
