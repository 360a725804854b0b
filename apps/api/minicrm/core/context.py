from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    """Who is calling and from where; copied into every audit row the request writes."""

    request_id: str
    correlation_id: str
    user_id: str | None
    client_ip: str | None
    user_agent: str | None


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            client_ip=client_ip(request),
            user_agent=(request.headers.get("user-agent") or None),
        )
        request.state.context = context
        response = await call_next(request)
        response.headers["x-request-id"] = context.request_id
        return response
