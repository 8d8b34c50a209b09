from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.context import request_correlation_id
from app.platform.security.errors import ControlPlaneError


logger = logging.getLogger("app.request")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("control_plane.error", extra={"status_code": exc.status_code, "error": exc.message})
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
