from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Client project stage transitions by target stage and trigger",
    ["to_stage", "trigger"],
)

crm_secondary_effect_failures_total = Counter(
    "crm_secondary_effect_failures_total",
    "Best-effort side effects that failed and were swallowed",
    ["effect"],
)

crm_db_retries_total = Counter(
    "crm_db_retries_total",
    "Primary write retries after transient database errors",
    ["outcome"],
)

crm_notification_deliveries_total = Counter(
    "crm_notification_deliveries_total",
    "Notification deliveries by channel and status",
    ["channel", "status"],
)

crm_mirror_reconciles_total = Counter(
    "crm_mirror_reconciles_total",
    "Mirror client reconcile runs by result",
    ["result"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(to_stage: str, trigger: str) -> None:
    crm_stage_transitions_total.labels(to_stage=to_stage, trigger=trigger).inc()


def observe_secondary_effect_failure(effect: str) -> None:
    crm_secondary_effect_failures_total.labels(effect=effect).inc()


def observe_db_retry(outcome: str) -> None:
    crm_db_retries_total.labels(outcome=outcome).inc()


def observe_notification_delivery(channel: str, status: str) -> None:
    crm_notification_deliveries_total.labels(channel=channel, status=status).inc()


def observe_mirror_reconcile(result: str) -> None:
    crm_mirror_reconciles_total.labels(result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
