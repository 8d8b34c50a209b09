from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import request_context
from app.logging import redact_tokens
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    # Resolved after routing so matched requests report the route template, never the raw token.
    path = redact_tokens(resolve_http_path_label(request))
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

    context = request_context(request)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "user_id": context.user_id if context is not None else None,
        "enterprise_id": context.enterprise_id if context is not None else None,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_request_fields(request, 500, started))
            raise

        logger.info("http.request", extra=_request_fields(request, response.status_code, started))
        return response
