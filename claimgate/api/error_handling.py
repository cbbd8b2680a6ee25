from __future__ import annotations

from typing import Any, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from claimgate.api.schemas import Envelope, ErrorBody
from claimgate.logging import get_logger, sanitize_error_message
from claimgate.service.errors import ServiceError
from claimgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details,
        ),
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    """5xx at error level, everything else as a warning."""
    emit = logger.error if status_code >= 500 else logger.warning
    emit(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    """Field locations and messages only; submitted values never echo back."""
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": sanitize_error_message(str(err.get("msg", "invalid value"))),
        }
        for err in exc.errors()
    ]


def _unpack_http_detail(exc: HTTPException) -> Tuple[str, Optional[str], Any]:
    """Message, code and details from an ``_http_error`` payload or a plain detail string."""
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    return (detail if isinstance(detail, str) else "http error"), None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage, validation and unexpected errors onto the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            "service_error",
            request,
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(
            "request_validation_error", request, 400, fields=[d["field"] for d in details]
        )
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc)
        if exc.status_code >= 400:
            _log_failure("http_error", request, exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
