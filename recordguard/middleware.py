from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from recordguard.context import reset_correlation_id, set_correlation_id
from recordguard.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("recordguard.request")

_CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")
_MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str | None:
    for header in _CORRELATION_HEADERS:
        value = request.headers.get(header, "").strip()
        if value and len(value) <= _MAX_CORRELATION_ID_LENGTH and value.isprintable():
            return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's correlation id (or request id) when it is sane, else mint one."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("recordguard.correlation_id", correlation_id)
            actor_id = request.headers.get("x-actor-id")
            if actor_id:
                span.set_attribute("recordguard.actor_id", actor_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Per-request access log and HTTP metrics.

    Responses in the 4xx range are logged at WARNING so version conflicts and
    validation failures stand out from ordinary traffic.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # the route is only resolved once the router has run
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        level = logging.WARNING if 400 <= response.status_code < 500 else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
