"""
Google Play Verification
========================

Verifies Google Play purchase tokens through the Android Publisher API
using a service-account credential supplied at construction.

Handles:
- Subscription lookups (``purchases.subscriptions.get``)
- One-time product lookups (``purchases.products.get``)
- Mapping of HTTP failures onto the verification failure classes
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import service_account

from app.core.errors import MissingCredentialsError
from app.models.subscription import Platform, SubscriptionStatus
from app.schemas.verification import FailureKind, VerificationResult
from app.services.apple_verifier import ms_to_datetime

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# One-time product purchaseState values
PURCHASE_STATE_PURCHASED = 0
PURCHASE_STATE_CANCELLED = 1
PURCHASE_STATE_PENDING = 2

AUTHORIZATION_HTTP_STATUSES = frozenset({401, 403})
REJECTION_HTTP_STATUSES = frozenset({400, 404, 410})


def lineage_from_order_id(order_id: Optional[str], purchase_token: str) -> str:
    """
    Base order id shared by every renewal of a subscription.

    Renewals are suffixed ``..N`` (``GPA.1234-5678-9012-34567..3``).
    Falls back to the purchase token when Google returns no order id.
    """
    if not order_id:
        return purchase_token
    return order_id.split("..", 1)[0]


class GooglePlayVerifier:
    """Android Publisher API adapter."""

    BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"

    def __init__(
        self,
        credentials: Any,
        package_name: str = "",
        *,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if credentials is None:
            raise MissingCredentialsError(
                "Google Play verification requires service-account credentials"
            )
        self.credentials = credentials
        self.package_name = package_name
        self.timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_service_account_file(
        cls,
        path: str,
        package_name: str = "",
        **kwargs: Any,
    ) -> "GooglePlayVerifier":
        """Build a verifier from a service-account JSON key file."""
        credentials = service_account.Credentials.from_service_account_file(
            path,
            scopes=[ANDROID_PUBLISHER_SCOPE],
        )
        return cls(credentials, package_name, **kwargs)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def verify(
        self,
        package_name: Optional[str],
        product_id: str,
        purchase_token: str,
        is_subscription: bool,
    ) -> VerificationResult:
        """
        Verify a purchase token.

        Args:
            package_name: Application id; defaults to the configured package.
            product_id: Subscription id or in-app product SKU.
            purchase_token: Token returned by Play Billing on the device.
            is_subscription: Selects the subscriptions or products lookup.

        Returns:
            VerificationResult. Authorization and not-found failures are
            returned as ``valid=False`` results, never raised.
        """
        package_name = package_name or self.package_name
        kind = "subscriptions" if is_subscription else "products"
        url = (
            f"{self.BASE_URL}/{package_name}/purchases/{kind}/"
            f"{product_id}/tokens/{purchase_token}"
        )

        try:
            access_token = await self._access_token()
        except google_auth_exceptions.RefreshError as exc:
            logger.error("Google service-account token refresh rejected: %s", exc)
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.AUTHORIZATION,
                raw_data={"error": str(exc)},
                product_id=product_id,
            )
        except google_auth_exceptions.TransportError as exc:
            logger.warning("Google token refresh transport failure: %s", exc)
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.TRANSPORT,
                raw_data={"error": str(exc)},
                product_id=product_id,
            )

        try:
            response = await self._get(url, access_token)
        except httpx.TimeoutException:
            logger.warning("Google Play API timeout for product %s", product_id)
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.TRANSPORT,
                raw_data={"error": "timeout"},
                product_id=product_id,
            )
        except httpx.HTTPError as exc:
            logger.warning("Google Play API error for product %s: %s", product_id, exc)
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.TRANSPORT,
                raw_data={"error": str(exc)},
                product_id=product_id,
            )

        if response.status_code != 200:
            return self._failure_from_response(response, product_id)

        try:
            data = response.json()
        except ValueError:
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.TRANSPORT,
                raw_data={"http_status": response.status_code, "error": "non-JSON body"},
                product_id=product_id,
            )

        if is_subscription:
            return self._subscription_result(data, product_id, purchase_token)
        return self._product_result(data, product_id, purchase_token)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _access_token(self) -> str:
        """Return a bearer token, refreshing the credential only when stale."""
        if not self.credentials.valid:
            # google-auth refresh is blocking
            await asyncio.to_thread(self.credentials.refresh, google_requests.Request())
        return self.credentials.token

    async def _get(self, url: str, access_token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"}
        if self._http_client is not None:
            return await self._http_client.get(url, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(url, headers=headers, timeout=self.timeout)

    # -------------------------------------------------------------------------
    # Response mapping
    # -------------------------------------------------------------------------

    def _failure_from_response(
        self,
        response: httpx.Response,
        product_id: str,
    ) -> VerificationResult:
        code = response.status_code
        raw = {"http_status": code, "body": response.text[:500]}

        if code in AUTHORIZATION_HTTP_STATUSES:
            logger.error(
                "Google Play API returned %d; check service-account permissions",
                code,
            )
            failure = FailureKind.AUTHORIZATION
        elif code in REJECTION_HTTP_STATUSES:
            logger.info("Google Play rejected token for product %s (HTTP %d)", product_id, code)
            failure = FailureKind.UPSTREAM_REJECTION
        else:
            logger.warning("Google Play API returned HTTP %d for product %s", code, product_id)
            failure = FailureKind.TRANSPORT

        return VerificationResult.invalid(
            Platform.ANDROID,
            failure,
            raw_data=raw,
            product_id=product_id,
        )

    def _subscription_result(
        self,
        data: dict[str, Any],
        product_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        expires_at = ms_to_datetime(data.get("expiryTimeMillis"))
        cancelled = (
            data.get("cancelReason") is not None
            or data.get("userCancellationTimeMillis") is not None
        )

        if cancelled:
            status = SubscriptionStatus.CANCELLED
        elif expires_at is not None and expires_at > datetime.now(timezone.utc):
            status = SubscriptionStatus.ACTIVE
        else:
            status = SubscriptionStatus.EXPIRED

        order_id = data.get("orderId")
        return VerificationResult(
            valid=True,
            status=status,
            platform=Platform.ANDROID,
            product_id=product_id,
            original_transaction_id=lineage_from_order_id(order_id, purchase_token),
            transaction_id=order_id or purchase_token,
            expires_at=expires_at,
            raw_data=data,
        )

    def _product_result(
        self,
        data: dict[str, Any],
        product_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        state = data.get("purchaseState")

        if state == PURCHASE_STATE_PURCHASED:
            status = SubscriptionStatus.ACTIVE
        elif state == PURCHASE_STATE_CANCELLED:
            status = SubscriptionStatus.CANCELLED
        else:
            # Pending (or undocumented) purchases are not an entitlement yet
            logger.info("Google purchase for %s not confirmed (purchaseState=%s)", product_id, state)
            return VerificationResult.invalid(
                Platform.ANDROID,
                FailureKind.UPSTREAM_REJECTION,
                raw_data=data,
                product_id=product_id,
            )

        order_id = data.get("orderId")
        return VerificationResult(
            valid=True,
            status=status,
            platform=Platform.ANDROID,
            product_id=product_id,
            original_transaction_id=lineage_from_order_id(order_id, purchase_token),
            transaction_id=order_id or purchase_token,
            expires_at=None,
            raw_data=data,
        )
