"""
Webhook Notification Normalizer
===============================

Maps Apple App Store server notifications and Google Play real-time
developer notifications onto ``NotificationEvent``.

Apple notifications carry the purchase lineage in the embedded receipt.
Google notifications only carry a purchase token, so every Google
subscription or product notification is re-verified against the Play API
to resolve its lineage, expiry and order id before reconciliation.
"""

import base64
import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from app.core.errors import MalformedNotification, MissingCredentialsError, TransportFailure
from app.models.subscription import NotificationKind, Platform
from app.schemas.verification import FailureKind, NotificationEvent
from app.services.apple_verifier import entry_expiry, latest_receipt_entry
from app.services.google_play import GooglePlayVerifier

logger = logging.getLogger(__name__)


APPLE_NOTIFICATION_KINDS: dict[str, NotificationKind] = {
    "INITIAL_BUY": NotificationKind.PURCHASED,
    "DID_RENEW": NotificationKind.RENEWED,
    "DID_RECOVER": NotificationKind.RECOVERED,
    "DID_FAIL_TO_RENEW": NotificationKind.FAILED_RENEWAL,
    "DID_CANCEL": NotificationKind.CANCELLED,
    "EXPIRED": NotificationKind.EXPIRED,
}

# subscriptionNotification.notificationType
GOOGLE_SUBSCRIPTION_KINDS: dict[int, NotificationKind] = {
    1: NotificationKind.RECOVERED,       # SUBSCRIPTION_RECOVERED
    2: NotificationKind.RENEWED,         # SUBSCRIPTION_RENEWED
    3: NotificationKind.CANCELLED,       # SUBSCRIPTION_CANCELED
    4: NotificationKind.PURCHASED,       # SUBSCRIPTION_PURCHASED
    5: NotificationKind.FAILED_RENEWAL,  # SUBSCRIPTION_ON_HOLD
    6: NotificationKind.FAILED_RENEWAL,  # SUBSCRIPTION_IN_GRACE_PERIOD
    7: NotificationKind.RENEWED,         # SUBSCRIPTION_RESTARTED
    12: NotificationKind.CANCELLED,      # SUBSCRIPTION_REVOKED
    13: NotificationKind.EXPIRED,        # SUBSCRIPTION_EXPIRED
}

# oneTimeProductNotification.notificationType
GOOGLE_ONE_TIME_KINDS: dict[int, NotificationKind] = {
    1: NotificationKind.PURCHASED,   # ONE_TIME_PRODUCT_PURCHASED
    2: NotificationKind.CANCELLED,   # ONE_TIME_PRODUCT_CANCELED
}

# Never stored alongside notification payloads
_APPLE_SECRET_FIELDS = ("password",)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_text(value: Any) -> Optional[str]:
    """Identifier fields arrive as strings or numbers; anything else is ignored."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


class NotificationNormalizer:
    """Turns raw webhook bodies into ``NotificationEvent`` objects."""

    def __init__(self, google: Optional[GooglePlayVerifier] = None):
        self.google = google

    # -------------------------------------------------------------------------
    # Apple
    # -------------------------------------------------------------------------

    def normalize_apple(self, payload: Any) -> NotificationEvent:
        """
        Normalize an App Store server notification.

        Raises:
            MalformedNotification: no ``original_transaction_id`` can be found
                or the body does not have the expected field types.
        """
        if not isinstance(payload, dict):
            raise MalformedNotification("Apple notification body is not a JSON object")

        notification_type = _as_text(payload.get("notification_type"))
        kind = APPLE_NOTIFICATION_KINDS.get(notification_type, NotificationKind.UNKNOWN)

        entry = self._apple_receipt_entry(payload) or {}
        lineage = _as_text(entry.get("original_transaction_id")) or _as_text(
            payload.get("original_transaction_id")
        )
        if not lineage:
            raise MalformedNotification(
                f"Apple notification {notification_type!r} has no original_transaction_id"
            )

        raw_data = {k: v for k, v in payload.items() if k not in _APPLE_SECRET_FIELDS}
        product_id = _as_text(entry.get("product_id")) or _as_text(
            payload.get("auto_renew_product_id")
        )

        try:
            return NotificationEvent(
                event_kind=kind,
                original_transaction_id=lineage,
                platform=Platform.IOS,
                raw_data=raw_data,
                notification_type=notification_type,
                transaction_id=_as_text(entry.get("transaction_id")),
                product_id=product_id,
                expires_at=entry_expiry(entry) if entry else None,
            )
        except ValidationError as exc:
            raise MalformedNotification(f"Apple notification has invalid fields: {exc}") from exc

    @staticmethod
    def _apple_receipt_entry(payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        unified = payload.get("unified_receipt")
        if isinstance(unified, dict) and isinstance(unified.get("latest_receipt_info"), list):
            entry = latest_receipt_entry(unified["latest_receipt_info"])
            if entry is not None:
                return entry

        # Deprecated top-level fields
        for key in ("latest_receipt_info", "latest_expired_receipt_info"):
            value = payload.get(key)
            if isinstance(value, dict):
                return value
            if isinstance(value, list):
                entry = latest_receipt_entry(value)
                if entry is not None:
                    return entry
        return None

    # -------------------------------------------------------------------------
    # Google
    # -------------------------------------------------------------------------

    async def normalize_google(self, payload: Any) -> Optional[NotificationEvent]:
        """
        Normalize a Google Play real-time developer notification.

        Accepts either the Pub/Sub push envelope or the decoded notification.

        Returns:
            NotificationEvent, or None for test notifications.

        Raises:
            MalformedNotification: required identity fields are missing or
                the purchase token is rejected by Google.
            TransportFailure: Google could not be reached to resolve the
                token; the delivery should be retried.
            MissingCredentialsError: no Google verifier is configured.
        """
        notification = self._decode_google_envelope(payload)

        if "testNotification" in notification:
            logger.info("Google Play test notification received")
            return None

        subscription = notification.get("subscriptionNotification")
        one_time = notification.get("oneTimeProductNotification")

        if isinstance(subscription, dict):
            is_subscription = True
            code = subscription.get("notificationType")
            token = _as_text(subscription.get("purchaseToken"))
            product_id = _as_text(subscription.get("subscriptionId"))
            kind = GOOGLE_SUBSCRIPTION_KINDS.get(_as_int(code), NotificationKind.UNKNOWN)
        elif isinstance(one_time, dict):
            is_subscription = False
            code = one_time.get("notificationType")
            token = _as_text(one_time.get("purchaseToken"))
            product_id = _as_text(one_time.get("sku"))
            kind = GOOGLE_ONE_TIME_KINDS.get(_as_int(code), NotificationKind.UNKNOWN)
        else:
            raise MalformedNotification("Google notification carries no purchase notification")

        if not token or not product_id:
            raise MalformedNotification("Google notification is missing purchaseToken or product id")

        if self.google is None:
            raise MissingCredentialsError("Google Play verification is not configured")

        result = await self.google.verify(
            _as_text(notification.get("packageName")),
            product_id,
            token,
            is_subscription,
        )

        if not result.valid:
            if result.failure == FailureKind.TRANSPORT:
                raise TransportFailure(
                    f"could not resolve Google purchase token for {product_id}"
                )
            raise MalformedNotification(
                f"Google rejected purchase token for {product_id} "
                f"({result.failure.value if result.failure else 'unknown'})"
            )

        return NotificationEvent(
            event_kind=kind,
            original_transaction_id=result.original_transaction_id,
            platform=Platform.ANDROID,
            raw_data={"notification": notification, "purchase": result.raw_data},
            notification_type=str(code) if code is not None else None,
            transaction_id=result.transaction_id,
            product_id=product_id,
            expires_at=result.expires_at,
        )

    @staticmethod
    def _decode_google_envelope(payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise MalformedNotification("Google notification body is not a JSON object")

        message = payload.get("message")
        if not isinstance(message, dict):
            return payload

        data = message.get("data")
        if not data:
            raise MalformedNotification("Pub/Sub message has no data")
        if not isinstance(data, (str, bytes)):
            raise MalformedNotification("Pub/Sub message data is not a base64 string")
        try:
            decoded = json.loads(base64.b64decode(data).decode("utf-8"))
        except (TypeError, ValueError) as exc:
            raise MalformedNotification(f"Pub/Sub message data is not base64 JSON: {exc}") from exc

        if not isinstance(decoded, dict):
            raise MalformedNotification("Pub/Sub message data is not a JSON object")
        return decoded

