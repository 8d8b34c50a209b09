from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@dataclass
class RequestContext:
    """Who is acting on which enterprise, filled in by the access layer and read by the request log."""

    correlation_id: str | None
    user_id: str | None = None
    enterprise_id: str | None = None
    client_host: str | None = None


def request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


def request_correlation_id(request: Request) -> str | None:
    context = request_context(request)
    return get_correlation_id() or (context.correlation_id if context is not None else None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or get_correlation_id(),
            client_host=request.client.host if request.client is not None else None,
        )
        return await call_next(request)
