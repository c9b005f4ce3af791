"""
Verification Schemas
====================

Pydantic models shared by the platform adapters, the webhook normalizer
and the reconciler, plus the request/response schemas of the
verification endpoints.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.subscription import NotificationKind, Platform, SubscriptionStatus
from app.schemas.common import BaseResponse


class FailureKind(str, Enum):
    """Why a verification came back invalid."""

    TRANSPORT = "transport"
    UPSTREAM_REJECTION = "upstream_rejection"
    AUTHORIZATION = "authorization"


# ─── Normalized Verification Outcome ─────────────────────────────────────────


class VerificationResult(BaseModel):
    """
    Platform-agnostic outcome of a receipt/token verification.

    ``raw_data`` carries the full upstream response for audit and is never
    interpreted downstream. An invalid result always has ``unknown`` status.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    status: SubscriptionStatus
    platform: Platform
    product_id: str = ""
    original_transaction_id: str = ""
    transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw_data: dict[str, Any] = Field(default_factory=dict)
    failure: Optional[FailureKind] = None

    @model_validator(mode="after")
    def check_invalid_is_unknown(self) -> "VerificationResult":
        if not self.valid and self.status != SubscriptionStatus.UNKNOWN:
            raise ValueError("an invalid verification result must have status 'unknown'")
        return self

    @classmethod
    def invalid(
        cls,
        platform: Platform,
        failure: FailureKind,
        raw_data: Optional[dict[str, Any]] = None,
        product_id: str = "",
    ) -> "VerificationResult":
        """Build a ``valid=False`` result for the given failure class."""
        return cls(
            valid=False,
            status=SubscriptionStatus.UNKNOWN,
            platform=platform,
            product_id=product_id,
            raw_data=raw_data or {},
            failure=failure,
        )


# ─── Abstract Notification Event ─────────────────────────────────────────────


class NotificationEvent(BaseModel):
    """
    A webhook notification mapped onto the shared event vocabulary.

    Produced by ``NotificationNormalizer`` and consumed once by the
    reconciler. Never persisted as-is.
    """

    model_config = ConfigDict(frozen=True)

    event_kind: NotificationKind
    original_transaction_id: str
    platform: Platform
    raw_data: dict[str, Any] = Field(default_factory=dict)
    notification_type: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None


# ─── Platform Payloads ───────────────────────────────────────────────────────


class ApplePayload(BaseModel):
    """iOS verification payload."""

    receipt_data: str = Field(min_length=1, description="Base64 App Store receipt")
    password: Optional[str] = None


class GooglePayload(BaseModel):
    """Android verification payload."""

    package_name: Optional[str] = None
    product_id: str = Field(min_length=1)
    purchase_token: str = Field(min_length=1)
    is_subscription: bool = True


PlatformPayload = Union[ApplePayload, GooglePayload]


# ─── Request / Response Schemas ──────────────────────────────────────────────


class VerifyRequest(BaseModel):
    """Request schema for ``POST /verify``."""

    platform: str
    user_id: Optional[str] = None
    payload: dict[str, Any]


class SubscriptionRecordResponse(BaseModel):
    """Serialized ``Subscription`` row."""

    model_config = ConfigDict(from_attributes=True)

    user_id: Optional[str] = None
    platform: Platform
    product_id: str
    transaction_id: str
    original_transaction_id: str
    status: SubscriptionStatus
    expires_at: Optional[datetime] = None
    last_event_kind: Optional[NotificationKind] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VerifyResponse(BaseResponse[dict[str, Any]]):
    """Response schema for ``POST /verify``."""


class SubscriptionResponse(BaseResponse[SubscriptionRecordResponse]):
    """Response schema for subscription lookups."""
