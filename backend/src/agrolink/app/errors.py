"""Application error types and the global JSON error handlers.

Every failure leaves the API as ``{"success": false, "message": ..., "error": ...}``
where ``error`` (exception details) is only populated in debug mode.
"""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import ExpiredSignatureError, JWTError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base error carrying an HTTP status code."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None, error: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.error = error


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class ExternalServiceError(AppError):
    """An outbound dependency (payment gateway, mail) failed.

    ``unavailable=True`` maps to 503 (timeouts, connection errors); anything
    else the dependency rejected maps to 500.
    """

    def __init__(self, message: str, unavailable: bool = False, error: str | None = None):
        super().__init__(message, status_code=503 if unavailable else 500, error=error)


def _body(message: str, error: str | None, debug: bool, **extra) -> dict:
    body = {"success": False, "message": message}
    if debug and error:
        body["error"] = error
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI, debug: bool = False) -> None:
    """Install the global exception handlers on ``app``."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_body(exc.message, exc.error or repr(exc), debug),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=_body(message, None, debug),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        field_errors = {}
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
            field_errors[".".join(loc) or "request"] = err.get("msg", "invalid value")
        message = "; ".join(f"{field}: {msg}" for field, msg in field_errors.items())
        return JSONResponse(
            status_code=400,
            content=_body(message or "Invalid request", None, debug, errors=field_errors),
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("Integrity error on %s: %s", request.url.path, exc.orig)
        return JSONResponse(
            status_code=400,
            content=_body("Duplicate or conflicting value entered", str(exc.orig), debug),
        )

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError):
        logger.warning("Concurrent modification on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content=_body("The resource was modified concurrently, please retry", str(exc), debug),
        )

    @app.exception_handler(ExpiredSignatureError)
    async def expired_token_handler(request: Request, exc: ExpiredSignatureError):
        return JSONResponse(status_code=401, content=_body("Token has expired", str(exc), debug))

    @app.exception_handler(JWTError)
    async def jwt_error_handler(request: Request, exc: JWTError):
        return JSONResponse(status_code=401, content=_body("Invalid token", str(exc), debug))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_body("Internal server error", traceback.format_exc(), debug),
        )
