"""
Error handling and sanitization

- ShippingError → JSON body with a stable `code` and the error's HTTP status
- Request validation errors → 400 INVALID_INPUT (safe to expose)
- Anything else → logged with traceback, generic 500 to the client
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shipdesk.core.config import settings
from shipdesk.core.exceptions import ShippingError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "bearer",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 500:
        return message[:500] + "..."

    return message


def shipping_error_response(exc: ShippingError) -> JSONResponse:
    content = {"ok": False, "code": exc.code, "error": sanitize_error_message(exc.message)}
    if "missing" in exc.details:
        content["missing"] = exc.details["missing"]
    detail = exc.details.get("detail")
    if isinstance(detail, str):
        content["detail"] = sanitize_error_message(detail)
    elif detail is not None and exc.status_code < 500:
        # structured detail only for client errors
        content["detail"] = detail
    return JSONResponse(status_code=exc.status_code, content=content)


async def shipping_error_handler(request: Request, exc: ShippingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r} details={exc.details}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return shipping_error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "ok": False,
            "code": "INVALID_INPUT",
            "error": f"{location}: {message}" if location else message,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "ok": False,
                "code": "INTERNAL_ERROR",
                "error": "An unexpected error occurred. Please try again later.",
                "error_id": error_id,
            }
            if settings.DEBUG:
                content["error"] = str(e)
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShippingError, shipping_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_middleware(ErrorSanitizationMiddleware)
