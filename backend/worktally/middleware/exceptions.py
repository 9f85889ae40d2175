"""Application exceptions and the handlers that render them.

Every error leaves the API in one envelope:

    {"error": {"code": "ERROR_CODE", "message": "...", "details": {...}}}

`details` is only present when there is something to add (field-level
validation issues, a provisioning result).
"""

import logging
from typing import Any, Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class WorkTallyException(Exception):
    """Base exception for WorkTally application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Union[dict, list, None] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(WorkTallyException):
    def __init__(self, message: str, error_code: str = "BUSINESS_LOGIC_ERROR", details=None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, error_code, details)


class ResourceNotFoundError(WorkTallyException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            status.HTTP_404_NOT_FOUND,
            "RESOURCE_NOT_FOUND",
        )


class TenantContextError(WorkTallyException):
    """Raised when a tenant-scoped endpoint is hit without an organization."""

    def __init__(self, message: str = "Organization context required"):
        super().__init__(message, status.HTTP_403_FORBIDDEN, "TENANT_CONTEXT_REQUIRED")


class ConflictError(WorkTallyException):
    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(message, status.HTTP_409_CONFLICT, error_code)


class ProvisioningFailedError(WorkTallyException):
    """Organization provisioning aborted in one of its fatal stages.

    `details` carries the serialized provisioning result so the client
    can show the stage reached and offer a retry.
    """

    def __init__(self, message: str, error_code: str, result: dict[str, Any]):
        super().__init__(
            message,
            status.HTTP_502_BAD_GATEWAY,
            error_code.upper(),
            details=result,
        )


# ── Response helpers ────────────────────────────────────────

def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    content = {"error": {"code": error_code, "message": message}}
    if details:
        content["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


# Substring of the driver message -> (client message, error code)
_INTEGRITY_MESSAGES = [
    ("unique", "A record with this value already exists", "DUPLICATE_RECORD"),
    ("foreign key", "Referenced record does not exist", "FOREIGN_KEY_VIOLATION"),
    ("not null", "Required field is missing", "NULL_VALUE_NOT_ALLOWED"),
]


# ── Handlers ────────────────────────────────────────────────

async def worktally_exception_handler(request: Request, exc: WorkTallyException) -> JSONResponse:
    logger.warning(
        f"WorkTally exception: {exc.error_code} - {exc.message}",
        extra={"error_code": exc.error_code, **_request_context(request)},
    )
    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}", extra=_request_context(request))
    return create_error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={**_request_context(request), "errors": exc.errors()},
    )
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": errors},
    )


async def database_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error(f"Database integrity error on {request.url.path}: {exc}", extra=_request_context(request))

    driver_message = str(getattr(exc, "orig", exc)).lower()
    message, error_code = "Database constraint violation", "INTEGRITY_ERROR"
    for needle, text, code in _INTEGRITY_MESSAGES:
        if needle in driver_message:
            message, error_code = text, code
            break

    return create_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, message, error_code)


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error(f"Database operational error on {request.url.path}: {exc}", extra=_request_context(request))
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Database temporarily unavailable. Please try again.",
        "DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception on {request.url.path}: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    # Internal details stay in the log
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with the FastAPI app."""
    app.add_exception_handler(WorkTallyException, worktally_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
