"""
Error Handling
==============

Standardized error codes, domain exceptions and exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Verification (VERIFY_001 - VERIFY_010)
    VERIFY_UNSUPPORTED_PLATFORM = "VERIFY_001"
    VERIFY_NOT_CONFIGURED = "VERIFY_002"

    # Subscription (SUB_001 - SUB_010)
    SUB_NOT_FOUND = "SUB_001"

    # Webhooks (HOOK_001 - HOOK_010)
    HOOK_UPSTREAM_UNAVAILABLE = "HOOK_001"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Domain Exceptions
# =============================================================================

class ReceiptVerificationError(Exception):
    """Base class for receipt verification and reconciliation errors."""


class TransportFailure(ReceiptVerificationError):
    """Network error or timeout while talking to Apple or Google."""


class UnsupportedPlatform(ReceiptVerificationError):
    """Verification requested for a platform tag we do not handle."""

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform!r}")


class MissingCredentialsError(ReceiptVerificationError):
    """An adapter was constructed without the credentials it needs."""


class MalformedNotification(ReceiptVerificationError):
    """Webhook payload is missing the fields needed to identify a purchase."""


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def unsupported_platform_handler(
    request: Request,
    exc: UnsupportedPlatform,
) -> JSONResponse:
    """Caller asked for a platform we do not verify."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VERIFY_UNSUPPORTED_PLATFORM,
                "message": str(exc),
                "field": "platform",
            },
        },
    )


async def missing_credentials_handler(
    request: Request,
    exc: MissingCredentialsError,
) -> JSONResponse:
    """An adapter needed for this request is not configured."""
    logger.error("Verification adapter not configured: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VERIFY_NOT_CONFIGURED,
                "message": str(exc),
            },
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    from pydantic import ValidationError as PydanticValidationError

    if isinstance(exc, PydanticValidationError):
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            field = ".".join(str(loc) for loc in first_error.get("loc", []))
            message = first_error.get("msg", "Validation error")
        else:
            field = None
            message = "Validation error"

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": {
                    "code": ErrorCodes.VALIDATION_ERROR,
                    "message": message,
                    "field": field,
                },
            },
        )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": str(exc),
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(UnsupportedPlatform, unsupported_platform_handler)
    app.add_exception_handler(MissingCredentialsError, missing_credentials_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
