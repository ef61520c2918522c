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

lead_scores_computed_total = Counter(
    "lead_scores_computed_total",
    "Lead score computations by mode and outcome",
    ["mode", "outcome"],
)

lead_score_batch_duration_seconds = Histogram(
    "lead_score_batch_duration_seconds",
    "Tenant batch rescoring duration in seconds",
)

lead_allocations_total = Counter(
    "lead_allocations_total",
    "Lead assignments by mode",
    ["mode"],
)

lead_alert_failures_total = Counter(
    "lead_alert_failures_total",
    "Lead-assigned notifications that failed to send",
)

nurture_enrollments_total = Counter(
    "nurture_enrollments_total",
    "Nurture enrollment transitions by action",
    ["action"],
)

nurture_dispatch_total = Counter(
    "nurture_dispatch_total",
    "Scheduled step dispatch outcomes",
    ["channel", "status"],
)

nurture_dispatch_duration_seconds = Histogram(
    "nurture_dispatch_duration_seconds",
    "Scheduled step dispatch duration in seconds",
    ["channel"],
)

scheduler_claims_total = Counter(
    "scheduler_claims_total",
    "Scheduled step claim attempts by outcome",
    ["outcome"],
)

scheduler_reclaimed_total = Counter(
    "scheduler_reclaimed_total",
    "Stale PROCESSING steps returned by the recovery sweep",
    ["target_status"],
)

scheduler_tick_duration_seconds = Histogram(
    "scheduler_tick_duration_seconds",
    "Scheduler poll/claim/dispatch cycle duration in seconds",
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


def observe_score(mode: str, outcome: str) -> None:
    lead_scores_computed_total.labels(mode=mode, outcome=outcome).inc()


def observe_score_batch(duration: float) -> None:
    lead_score_batch_duration_seconds.observe(duration)


def observe_allocation(mode: str) -> None:
    lead_allocations_total.labels(mode=mode).inc()


def observe_lead_alert_failure() -> None:
    lead_alert_failures_total.inc()


def observe_enrollment(action: str) -> None:
    nurture_enrollments_total.labels(action=action).inc()


def observe_dispatch(channel: str, status: str, duration: float) -> None:
    nurture_dispatch_total.labels(channel=channel, status=status).inc()
    nurture_dispatch_duration_seconds.labels(channel=channel).observe(duration)


def observe_claim(won: bool) -> None:
    scheduler_claims_total.labels(outcome="won" if won else "lost").inc()


def observe_reclaimed(target_status: str, count: int = 1) -> None:
    if count > 0:
        scheduler_reclaimed_total.labels(target_status=target_status).inc(count)


def observe_scheduler_tick(duration: float) -> None:
    scheduler_tick_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
