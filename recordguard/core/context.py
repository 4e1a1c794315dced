from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from recordguard.errors import ErrorContext


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    actor_id: str | None
    organization_id: str | None

    def to_error_context(self) -> ErrorContext:
        return ErrorContext(
            actor_id=self.actor_id,
            organization_id=self.organization_id,
            request_id=self.request_id,
        )


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            actor_id=request.headers.get("x-actor-id"),
            organization_id=request.headers.get("x-organization-id"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
