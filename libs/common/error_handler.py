"""Global exception handlers for consistent error responses.

Every error body has the shape ``{"detail": str, "code": str}`` plus an
optional ``details`` object. Internal exception text never reaches a client;
unexpected exceptions are logged with their traceback and answered with a
generic 500.

Usage:
    from libs.common.error_handler import add_exception_handlers

    add_exception_handlers(app, domain_errors=(StoreError,))
"""

from typing import Iterable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
}


def _error_response(
    status_code: int, detail: str, code: str, details=None, headers=None
):
    content = {"detail": detail, "code": code}
    if details:
        content["details"] = details
    request_id = get_request_id()
    if request_id:
        content["request_id"] = request_id
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Errors that carry their own ``code``, ``status_code``, ``message``."""
    status_code = getattr(exc, "status_code", 400)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "%s %s -> %s %s",
        request.method,
        request.url.path,
        status_code,
        getattr(exc, "code", "ERROR"),
    )
    return _error_response(
        status_code,
        getattr(exc, "message", "Request failed"),
        getattr(exc, "code", "ERROR"),
        getattr(exc, "details", None),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(
        exc.status_code,
        detail,
        _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field locations and messages only; never echo the submitted input back
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(
        422, "Invalid request", "VALIDATION_ERROR", {"errors": errors}
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "Internal server error", "INTERNAL_ERROR")


def add_exception_handlers(
    app: FastAPI, domain_errors: Iterable[type[Exception]] = ()
) -> None:
    """Register the standard handlers on ``app``."""
    for error_type in domain_errors:
        app.add_exception_handler(error_type, domain_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
