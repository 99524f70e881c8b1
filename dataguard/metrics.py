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

auth_session_cache_hits_total = Counter(
    "auth_session_cache_hits_total",
    "Session token lookups served from the session cache",
)

auth_session_cache_misses_total = Counter(
    "auth_session_cache_misses_total",
    "Session token lookups that required a rule store round trip",
)

auth_failures_total = Counter(
    "auth_failures_total",
    "Total authentication failures by reason",
    ["reason"],
)

oauth2_state_rejections_total = Counter(
    "oauth2_state_rejections_total",
    "OAuth2 callbacks rejected because of an invalid or reused state",
    ["provider"],
)

security_rule_loads_total = Counter(
    "security_rule_loads_total",
    "Security rule loads by kind and outcome",
    ["kind", "outcome"],
)

fls_masked_fields_count = Counter(
    "fls_masked_fields_count",
    "Total FLS-masked fields",
    ["resource", "operation"],
)

fls_masking_failures_total = Counter(
    "fls_masking_failures_total",
    "Column rules skipped because the path could not be resolved",
    ["resource"],
)

rls_denied_reads_count = Counter(
    "rls_denied_reads_count",
    "Total denied reads by RLS",
    ["resource"],
)

background_task_failures_total = Counter(
    "background_task_failures_total",
    "Fire-and-forget background task failures",
    ["task"],
)

rule_store_call_duration_seconds = Histogram(
    "rule_store_call_duration_seconds",
    "Rule store call duration in seconds",
    ["operation"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_session_cache_hit() -> None:
    auth_session_cache_hits_total.inc()


def observe_session_cache_miss() -> None:
    auth_session_cache_misses_total.inc()


def observe_auth_failure(reason: str) -> None:
    auth_failures_total.labels(reason=reason).inc()


def observe_oauth2_state_rejection(provider: str) -> None:
    oauth2_state_rejections_total.labels(provider=provider).inc()


def observe_rule_load(kind: str, outcome: str) -> None:
    security_rule_loads_total.labels(kind=kind, outcome=outcome).inc()


def observe_fls_masked_fields(resource: str, operation: str, masked_count: int) -> None:
    if masked_count > 0:
        fls_masked_fields_count.labels(resource=resource, operation=operation).inc(masked_count)


def observe_fls_masking_failure(resource: str) -> None:
    fls_masking_failures_total.labels(resource=resource).inc()


def observe_rls_denied_read(resource: str) -> None:
    rls_denied_reads_count.labels(resource=resource).inc()


def observe_background_task_failure(task: str) -> None:
    background_task_failures_total.labels(task=task).inc()


def observe_rule_store_call(operation: str, duration: float) -> None:
    rule_store_call_duration_seconds.labels(operation=operation).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
