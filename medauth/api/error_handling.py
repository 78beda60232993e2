from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from medauth.api.schemas import ErrorEnvelope
from medauth.config import Environment, get_settings
from medauth.logging import get_logger
from medauth.service.errors import ServiceError
from medauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "INTERNAL_ERROR"
    return _STATUS_TO_CODE.get(status_code, "HTTP_ERROR")


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=code or _error_code_for_status(status_code),
        message=message,
        path=request.url.path,
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=_with_rate_limit_headers(request, headers),
    )


def _with_rate_limit_headers(
    request: Request, headers: Optional[Dict[str, str]]
) -> Optional[Dict[str, str]]:
    """Carry the limit counted for this request onto its error response.

    Headers set on the dependency response are dropped when the endpoint
    raises, so the counted result stored on ``request.state`` is replayed
    here. Headers already on the exception (a 429 rejection) take priority.
    """
    counted = getattr(request.state, "rate_limit", None)
    if counted is None:
        return headers
    merged = counted.headers()
    merged.update(headers or {})
    return merged


def _validation_details(exc: RequestValidationError) -> List[Dict[str, str]]:
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(error.get("msg", "invalid value"))
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc) or "body", "message": message})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install the single translator from exceptions to error envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(request, 409, exc.message, exc.detail, code="CONFLICT")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            request,
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers=exc.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(
            request, 400, "Validation failed", details, code="VALIDATION_ERROR"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            request,
            exc.status_code,
            message,
            exc.detail if isinstance(exc.detail, (dict, list)) else None,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        message = "Internal server error"
        if get_settings().environment == Environment.DEVELOPMENT:
            message = str(exc) or message
        return _error_response(request, 500, message, code="INTERNAL_ERROR")
