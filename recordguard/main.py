from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from recordguard.api import router as api_router
from recordguard.context import get_correlation_id
from recordguard.core.config import get_settings
from recordguard.core.context import RequestContextMiddleware
from recordguard.errors import AppError, ErrorContext, ValidationError, handle_api_error
from recordguard.logging import configure_logging
from recordguard.middleware import CorrelationIdMiddleware, RequestLoggingMiddleware
from recordguard.tracing import setup_tracing


configure_logging(service=get_settings().app_name)
logger = logging.getLogger("recordguard.lifecycle")


def _error_context(request: Request) -> ErrorContext:
    context = getattr(request.state, "context", None)
    if context is not None:
        return context.to_error_context()
    return ErrorContext(request_id=get_correlation_id())


def error_response(request: Request, raw: BaseException) -> JSONResponse:
    context = _error_context(request)
    handled = handle_api_error(raw, context)
    response = JSONResponse(status_code=handled.error.status_code, content=jsonable_encoder(handled.response))
    if context.request_id:
        response.headers["x-request-id"] = context.request_id
    return response


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return error_response(request, exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {"loc": list(item.get("loc", ())), "msg": item.get("msg"), "type": item.get("type")}
        for item in exc.errors()
    ]
    return error_response(request, ValidationError("Invalid input data", details={"issues": issues}, cause=exc))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return error_response(request, exc)


app = FastAPI(title="recordguard API", version="0.1.0")
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_error_handler)
app.include_router(api_router)

settings = get_settings()
if setup_tracing(settings) is not None:
    logger.info("tracing_enabled", extra={"operation": "startup"})

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app)
