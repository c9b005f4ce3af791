"""
Verification Orchestrator
=========================

Routes a verification request to the Apple or Google adapter by platform
tag. Stateless: no retries, caching or deduplication happen here.
"""

import logging
from typing import Any, Optional, Union

from app.core.errors import MissingCredentialsError, UnsupportedPlatform
from app.models.subscription import Platform
from app.schemas.verification import (
    ApplePayload,
    GooglePayload,
    PlatformPayload,
    VerificationResult,
)
from app.services.apple_verifier import AppleReceiptVerifier
from app.services.google_play import GooglePlayVerifier

logger = logging.getLogger(__name__)


class VerificationOrchestrator:
    """Platform-agnostic entry point for receipt verification."""

    def __init__(
        self,
        apple: Optional[AppleReceiptVerifier],
        google: Optional[GooglePlayVerifier],
    ):
        self.apple = apple
        self.google = google

    async def verify(
        self,
        platform: Union[str, Platform],
        payload: Union[PlatformPayload, dict[str, Any]],
    ) -> VerificationResult:
        """
        Verify a purchase on the given platform.

        Raises:
            UnsupportedPlatform: ``platform`` is neither ``ios`` nor ``android``.
                Raised before any remote call.
            MissingCredentialsError: the adapter for ``platform`` is not
                configured.
            pydantic.ValidationError: ``payload`` does not match the platform.
        """
        tag = platform.value if isinstance(platform, Platform) else platform

        if tag == Platform.IOS.value:
            apple_payload = (
                payload
                if isinstance(payload, ApplePayload)
                else ApplePayload.model_validate(payload)
            )
            if self.apple is None:
                raise MissingCredentialsError("Apple verification is not configured")
            return await self.apple.verify(
                apple_payload.receipt_data,
                password=apple_payload.password,
            )

        if tag == Platform.ANDROID.value:
            google_payload = (
                payload
                if isinstance(payload, GooglePayload)
                else GooglePayload.model_validate(payload)
            )
            if self.google is None:
                raise MissingCredentialsError("Google Play verification is not configured")
            return await self.google.verify(
                google_payload.package_name,
                google_payload.product_id,
                google_payload.purchase_token,
                google_payload.is_subscription,
            )

        logger.info("Rejected verification for unsupported platform %r", tag)
        raise UnsupportedPlatform(str(tag))
