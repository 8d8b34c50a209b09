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

access_gate_denials_total = Counter(
    "access_gate_denials_total",
    "Requests rejected by the enterprise access gate",
    ["reason"],
)

access_gate_admin_overrides_total = Counter(
    "access_gate_admin_overrides_total",
    "Requests admitted through the platform admin override",
)

team_invitations_total = Counter(
    "team_invitations_total",
    "Invitation lifecycle transitions",
    ["transition"],
)

enterprise_claims_total = Counter(
    "enterprise_claims_total",
    "Enterprise claim attempts by path and outcome",
    ["path", "outcome"],
)

credit_charges_total = Counter(
    "credit_charges_total",
    "Metered AI operations by outcome",
    ["outcome"],
)

credits_charged_total = Counter(
    "credits_charged_total",
    "Credits charged in minor currency units",
)

ai_provider_call_duration_seconds = Histogram(
    "ai_provider_call_duration_seconds",
    "AI provider call duration in seconds",
    ["model"],
)

payment_webhook_events_total = Counter(
    "payment_webhook_events_total",
    "Payment webhook events by type and outcome",
    ["event_type", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_access_denied(reason: str) -> None:
    access_gate_denials_total.labels(reason=reason).inc()


def observe_admin_override() -> None:
    access_gate_admin_overrides_total.inc()


def observe_invitation_transition(transition: str) -> None:
    team_invitations_total.labels(transition=transition).inc()


def observe_claim(path: str, outcome: str) -> None:
    enterprise_claims_total.labels(path=path, outcome=outcome).inc()


def observe_credit_charge(outcome: str, cost: int = 0) -> None:
    credit_charges_total.labels(outcome=outcome).inc()
    if cost > 0:
        credits_charged_total.inc(cost)


def observe_provider_call(model: str, duration: float) -> None:
    ai_provider_call_duration_seconds.labels(model=model).observe(duration)


def observe_webhook_event(event_type: str, outcome: str) -> None:
    payment_webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
