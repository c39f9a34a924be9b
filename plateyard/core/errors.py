import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from plateyard.core.config import settings

logger = logging.getLogger("plateyard.errors")


class AppError(Exception):
    """Base for errors that map onto a JSON error envelope."""

    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequest(AppError):
    status_code = 400


class NotFound(AppError):
    status_code = 404


class UpstreamError(AppError):
    """Database or third-party failure. Details are only shown outside prod."""

    status_code = 500
    expose_details = False


class ReconciliationNeeded(UpstreamError):
    """An external change went through but the local record did not."""

    expose_details = True


class ConfigurationMissing(AppError):
    status_code = 503


def error_body(error: str, details: Any = None) -> dict:
    body: dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    return body


def app_error_handler(request: Request, exc: AppError):
    details = exc.details
    if isinstance(exc, UpstreamError):
        logger.error(
            "UpstreamError path=%s error=%s details=%s",
            request.url.path,
            exc.message,
            exc.details,
        )
        if settings.is_prod and not exc.expose_details:
            details = None
    else:
        logger.info(
            "%s %s path=%s", type(exc).__name__, exc.status_code, request.url.path
        )
    return JSONResponse(
        status_code=exc.status_code, content=error_body(exc.message, details)
    )


def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # exc.detail is meant for clients; don't log it in case it echoes input
    logger.info("HTTPException %s path=%s", exc.status_code, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("ValidationError path=%s", request.url.path)
    details = None
    if not settings.is_prod:
        details = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()
        ]
    return JSONResponse(status_code=400, content=error_body("Invalid request", details))


def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("UnhandledException path=%s", request.url.path)
    details = None if settings.is_prod else str(exc)
    return JSONResponse(
        status_code=500, content=error_body("Internal Server Error", details)
    )
