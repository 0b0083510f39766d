"""
api/errors.py -- Render errors as the shared ErrorResponse envelope.

Used by the exception handlers in api/main.py and by code paths that must
build a response themselves (middleware runs outside the exception handlers;
login adds Cache-Control to its failure response).
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from core.errors import ServiceError


def error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    return error_response(exc.status_code, exc.code, exc.message, exc.detail)
