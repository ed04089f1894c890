"""Outbound WhatsApp, SMS and email payloads and the HTTP post that sends them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from signature8.core.config import Settings, get_settings
from signature8.crm.models import CRMNotification, CRMUser
from signature8.metrics import observe_notification_delivery


logger = logging.getLogger("signature8.crm.channels")


@dataclass(frozen=True)
class Delivery:
    channel: str
    recipient_id: str
    url: str
    json: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def render_text(notification: CRMNotification) -> str:
    lines = [f"*{notification.title}*", "", notification.message]
    if notification.linked_name:
        lines.extend(["", f"🔗 {notification.linked_name}"])
    lines.extend(["", "Signature8 CRM"])
    return "\n".join(lines)


def render_html(notification: CRMNotification) -> str:
    linked = f"<p><strong>{notification.linked_name}</strong></p>" if notification.linked_name else ""
    return f"<h2>{notification.title}</h2><p>{notification.message}</p>{linked}"


def build_deliveries(user: CRMUser, notification: CRMNotification, settings: Settings) -> list[Delivery]:
    deliveries: list[Delivery] = []
    if notification.send_whatsapp and user.phone and settings.whatsapp_api_url:
        deliveries.append(
            Delivery(
                channel="whatsapp",
                recipient_id=user.id,
                url=settings.whatsapp_api_url,
                json={"token": settings.whatsapp_api_token, "to": user.phone, "body": render_text(notification)},
            )
        )
    if notification.send_sms and user.phone and settings.sms_api_url:
        deliveries.append(
            Delivery(
                channel="sms",
                recipient_id=user.id,
                url=settings.sms_api_url,
                json={
                    "api_key": settings.sms_api_key,
                    "api_secret": settings.sms_api_secret,
                    "from": settings.sms_sender,
                    "to": user.phone,
                    "text": f"{notification.title}: {notification.message}",
                },
            )
        )
    if notification.send_email and user.email and settings.email_api_url:
        deliveries.append(
            Delivery(
                channel="email",
                recipient_id=user.id,
                url=settings.email_api_url,
                json={
                    "from": settings.email_from,
                    "to": [user.email],
                    "subject": notification.title,
                    "html": render_html(notification),
                },
                headers={"Authorization": f"Bearer {settings.email_api_key}"} if settings.email_api_key else {},
            )
        )
    return deliveries


def deliver(delivery: Delivery, *, transport: httpx.BaseTransport | None = None) -> bool:
    """Post one delivery. A failed channel is logged and counted, never raised."""
    timeout = get_settings().notifications_timeout_seconds
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            response = client.post(delivery.url, json=delivery.json, headers=delivery.headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        observe_notification_delivery(delivery.channel, "failed")
        logger.warning(
            "crm.notification_channel_failed",
            extra={"channel": delivery.channel, "recipient_id": delivery.recipient_id, "error": str(exc)},
        )
        return False
    observe_notification_delivery(delivery.channel, "sent")
    return True
