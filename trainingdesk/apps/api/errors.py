from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from trainingdesk.apps.api.response import error_response
from trainingdesk.core.errors import (
    Conflict,
    ExternalFetchFailure,
    InvalidTransition,
    NotFound,
    StorageFailure,
    TrainingDeskError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: TrainingDeskError) -> tuple[int, str, dict[str, Any] | None]:
    if isinstance(exc, NotFound):
        return 404, "NOT_FOUND", None
    if isinstance(exc, Conflict):
        return 409, "CONFLICT", {"reason": exc.reason}
    if isinstance(exc, InvalidTransition):
        return 409, "INVALID_TRANSITION", None
    if isinstance(exc, (StorageFailure, ExternalFetchFailure)):
        return 503, "SERVICE_UNAVAILABLE", None
    return 500, "INTERNAL_ERROR", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def domain_exception_handler(request: Request, exc: TrainingDeskError) -> JSONResponse:
    status_code, code, details = domain_error_status(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, type(exc).__name__)
        message = "Service temporarily unavailable" if status_code == 503 else "Internal server error"
    else:
        message = str(exc)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    # Service-level input validation (remarks length, unknown tier) is a client error.
    payload = error_response(request=request, code="VALIDATION_ERROR", message=str(exc))
    return JSONResponse(content=payload, status_code=422)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
