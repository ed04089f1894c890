from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from signature8.api.routes import router as api_router
from signature8.core.config import get_settings
from signature8.core.context import RequestContextMiddleware
from signature8.core.database import SessionLocal, get_db
from signature8.core.events import InternalEvent, event_bus
from signature8.crm.gateway import CrmGateway
from signature8.crm.service import NotificationService
from signature8.logging import configure_logging
from signature8.middleware.correlation_id import CorrelationIdMiddleware
from signature8.middleware.rate_limit import CrmMutationRateLimitMiddleware
from signature8.middleware.request_logging import RequestLoggingMiddleware
from signature8.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("signature8.lifecycle")
notification_service = NotificationService()
_subscriptions_registered = False

_notification_event_types = [
    "crm.client.stage_changed",
    "crm.payment.recorded",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_crm_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    try:
        with _session_scope() as session:
            notification_service.handle_domain_event(CrmGateway(session), envelope)
    except Exception as exc:
        logger.exception("crm.event_notification_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _notification_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Signature8 CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("signature8-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
