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

optimistic_updates_total = Counter(
    "optimistic_updates_total",
    "Versioned single-record updates by outcome",
    ["entity_type", "strategy", "outcome"],
)

optimistic_update_retries_total = Counter(
    "optimistic_update_retries_total",
    "Conditional writes resubmitted after a version conflict",
    ["entity_type"],
)

batch_updates_total = Counter(
    "batch_updates_total",
    "Batch update transactions by outcome",
    ["strategy", "outcome"],
)

compound_operations_total = Counter(
    "compound_operations_total",
    "Compound transactional operations by terminal state",
    ["operation", "state"],
)

compound_operation_duration_seconds = Histogram(
    "compound_operation_duration_seconds",
    "Compound operation duration in seconds",
    ["operation"],
)

app_errors_total = Counter(
    "app_errors_total",
    "Classified application errors by kind",
    ["type"],
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


def observe_optimistic_update(entity_type: str, strategy: str, outcome: str) -> None:
    optimistic_updates_total.labels(entity_type=entity_type, strategy=strategy, outcome=outcome).inc()


def observe_optimistic_retry(entity_type: str) -> None:
    optimistic_update_retries_total.labels(entity_type=entity_type).inc()


def observe_batch_update(strategy: str, outcome: str) -> None:
    batch_updates_total.labels(strategy=strategy, outcome=outcome).inc()


def observe_compound_operation(operation: str, state: str, duration: float) -> None:
    compound_operations_total.labels(operation=operation, state=state).inc()
    compound_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_app_error(error_type: str) -> None:
    app_errors_total.labels(type=error_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
