"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import (
    BaseResponse,
    ErrorResponse,
)
from app.schemas.verification import (
    FailureKind,
    NotificationEvent,
    VerificationResult,
)

__all__ = [
    "BaseResponse",
    "ErrorResponse",
    "FailureKind",
    "NotificationEvent",
    "VerificationResult",
]
