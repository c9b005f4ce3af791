"""
Webhook Normalizer Tests
========================

Tests for NotificationNormalizer including:
- Apple notification type mapping and lineage extraction
- Google Pub/Sub envelope decoding
- Google token re-verification
- Malformed payloads
"""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.errors import MalformedNotification, MissingCredentialsError, TransportFailure
from app.models.subscription import NotificationKind, Platform, SubscriptionStatus
from app.schemas.verification import FailureKind, VerificationResult
from app.services.notifications import NotificationNormalizer

from tests.helpers import PACKAGE_NAME, apple_entry, in_days, to_ms


def apple_notification(notification_type: str, entries=None, **extra) -> dict:
    payload = {
        "notification_type": notification_type,
        "environment": "PROD",
        "password": "shared-secret",
        "unified_receipt": {
            "status": 0,
            "latest_receipt_info": entries if entries is not None else [
                apple_entry(transaction_id="1000000000000005", expires_at=in_days(30)),
            ],
        },
    }
    payload.update(extra)
    return payload


def pubsub(notification: dict) -> dict:
    data = base64.b64encode(json.dumps(notification).encode("utf-8")).decode("ascii")
    return {
        "message": {"data": data, "messageId": "136969346945"},
        "subscription": "projects/focus/subscriptions/play-rtdn",
    }


def developer_notification(**body) -> dict:
    return {
        "version": "1.0",
        "packageName": PACKAGE_NAME,
        "eventTimeMillis": to_ms(in_days(0)),
        **body,
    }


def google_result(**overrides) -> VerificationResult:
    values = dict(
        valid=True,
        status=SubscriptionStatus.ACTIVE,
        platform=Platform.ANDROID,
        product_id="focus.premium",
        original_transaction_id="GPA.1234-5678-9012-34567",
        transaction_id="GPA.1234-5678-9012-34567..1",
        expires_at=in_days(30),
        raw_data={"orderId": "GPA.1234-5678-9012-34567..1"},
    )
    values.update(overrides)
    return VerificationResult(**values)


@pytest.fixture
def google():
    verifier = MagicMock()
    verifier.verify = AsyncMock(return_value=google_result())
    return verifier


class TestAppleNormalization:
    """normalize_apple."""

    @pytest.mark.parametrize(
        "notification_type,kind",
        [
            ("INITIAL_BUY", NotificationKind.PURCHASED),
            ("DID_RENEW", NotificationKind.RENEWED),
            ("DID_RECOVER", NotificationKind.RECOVERED),
            ("DID_FAIL_TO_RENEW", NotificationKind.FAILED_RENEWAL),
            ("DID_CANCEL", NotificationKind.CANCELLED),
            ("EXPIRED", NotificationKind.EXPIRED),
            ("PRICE_INCREASE_CONSENT", NotificationKind.UNKNOWN),
            ("DID_CHANGE_RENEWAL_PREF", NotificationKind.UNKNOWN),
        ],
    )
    def test_type_mapping(self, notification_type, kind):
        event = NotificationNormalizer().normalize_apple(apple_notification(notification_type))

        assert event.event_kind == kind
        assert event.notification_type == notification_type
        assert event.platform == Platform.IOS

    def test_extracts_latest_entry(self):
        newest = in_days(30)
        entries = [
            apple_entry(transaction_id="1000000000000004", expires_at=in_days(-1)),
            apple_entry(transaction_id="1000000000000005", expires_at=newest),
        ]

        event = NotificationNormalizer().normalize_apple(apple_notification("DID_RENEW", entries))

        assert event.original_transaction_id == "1000000000000001"
        assert event.transaction_id == "1000000000000005"
        assert event.product_id == "focus.premium.monthly"
        assert event.expires_at == newest

    def test_shared_secret_is_not_kept(self):
        event = NotificationNormalizer().normalize_apple(apple_notification("DID_RENEW"))

        assert "password" not in event.raw_data
        assert event.raw_data["notification_type"] == "DID_RENEW"

    def test_legacy_top_level_receipt_info(self):
        payload = {
            "notification_type": "DID_CANCEL",
            "latest_expired_receipt_info": apple_entry(
                original_transaction_id="2000000000000001",
                expires_at=in_days(-3),
            ),
        }

        event = NotificationNormalizer().normalize_apple(payload)

        assert event.original_transaction_id == "2000000000000001"
        assert event.event_kind == NotificationKind.CANCELLED

    def test_top_level_original_transaction_id(self):
        payload = {
            "notification_type": "DID_CHANGE_RENEWAL_STATUS",
            "original_transaction_id": "3000000000000001",
            "auto_renew_product_id": "focus.premium.yearly",
        }

        event = NotificationNormalizer().normalize_apple(payload)

        assert event.original_transaction_id == "3000000000000001"
        assert event.product_id == "focus.premium.yearly"
        assert event.expires_at is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"notification_type": "DID_RENEW"},
            {"notification_type": "DID_RENEW", "unified_receipt": {"latest_receipt_info": []}},
            ["not", "an", "object"],
        ],
    )
    def test_missing_lineage_is_malformed(self, payload):
        with pytest.raises(MalformedNotification):
            NotificationNormalizer().normalize_apple(payload)

    @pytest.mark.parametrize("notification_type", [["DID_RENEW"], {"type": "DID_RENEW"}, None])
    def test_non_text_notification_type_is_unknown(self, notification_type):
        payload = {"notification_type": notification_type, "original_transaction_id": "3000000000000001"}

        event = NotificationNormalizer().normalize_apple(payload)

        assert event.event_kind == NotificationKind.UNKNOWN
        assert event.notification_type is None
        assert event.original_transaction_id == "3000000000000001"

    def test_numeric_notification_type_is_unknown(self):
        payload = {"notification_type": 5, "original_transaction_id": "3000000000000001"}

        event = NotificationNormalizer().normalize_apple(payload)

        assert event.event_kind == NotificationKind.UNKNOWN
        assert event.notification_type == "5"

    def test_non_list_receipt_info_falls_back_to_top_level_lineage(self):
        payload = {
            "notification_type": "DID_RENEW",
            "original_transaction_id": 3000000000000001,
            "unified_receipt": {"latest_receipt_info": 7},
        }

        event = NotificationNormalizer().normalize_apple(payload)

        assert event.original_transaction_id == "3000000000000001"
        assert event.expires_at is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"notification_type": "DID_RENEW", "original_transaction_id": ["3000000000000001"]},
            {"notification_type": "DID_RENEW", "original_transaction_id": {"id": "1"}},
            apple_notification("DID_RENEW", entries=[{"original_transaction_id": ["1"]}]),
        ],
    )
    def test_non_text_lineage_is_malformed(self, payload):
        with pytest.raises(MalformedNotification):
            NotificationNormalizer().normalize_apple(payload)

    def test_non_text_entry_fields_are_dropped(self):
        entry = apple_entry(expires_at=in_days(30))
        entry["product_id"] = ["focus.premium.monthly"]
        entry["transaction_id"] = {"id": "1000000000000005"}

        event = NotificationNormalizer().normalize_apple(apple_notification("DID_RENEW", entries=[entry]))

        assert event.product_id is None
        assert event.transaction_id is None
        assert event.event_kind == NotificationKind.RENEWED


class TestGoogleNormalization:
    """normalize_google."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,kind",
        [
            (1, NotificationKind.RECOVERED),
            (2, NotificationKind.RENEWED),
            (3, NotificationKind.CANCELLED),
            (4, NotificationKind.PURCHASED),
            (5, NotificationKind.FAILED_RENEWAL),
            (6, NotificationKind.FAILED_RENEWAL),
            (7, NotificationKind.RENEWED),
            (12, NotificationKind.CANCELLED),
            (13, NotificationKind.EXPIRED),
            (9, NotificationKind.UNKNOWN),
        ],
    )
    async def test_subscription_codes(self, google, code, kind):
        notification = developer_notification(subscriptionNotification={
            "version": "1.0",
            "notificationType": code,
            "purchaseToken": "token-abc",
            "subscriptionId": "focus.premium",
        })

        event = await NotificationNormalizer(google).normalize_google(pubsub(notification))

        assert event.event_kind == kind
        assert event.notification_type == str(code)

    @pytest.mark.asyncio
    async def test_token_is_re_verified_to_resolve_lineage(self, google):
        expires = in_days(30)
        google.verify.return_value = google_result(expires_at=expires)
        notification = developer_notification(subscriptionNotification={
            "notificationType": 2,
            "purchaseToken": "token-abc",
            "subscriptionId": "focus.premium",
        })

        event = await NotificationNormalizer(google).normalize_google(pubsub(notification))

        google.verify.assert_awaited_once_with(PACKAGE_NAME, "focus.premium", "token-abc", True)
        assert event.platform == Platform.ANDROID
        assert event.original_transaction_id == "GPA.1234-5678-9012-34567"
        assert event.transaction_id == "GPA.1234-5678-9012-34567..1"
        assert event.expires_at == expires
        assert event.raw_data["notification"] == notification
        assert event.raw_data["purchase"] == {"orderId": "GPA.1234-5678-9012-34567..1"}

    @pytest.mark.asyncio
    async def test_every_delivery_is_re_verified(self, google):
        notification = developer_notification(subscriptionNotification={
            "notificationType": 2,
            "purchaseToken": "token-abc",
            "subscriptionId": "focus.premium",
        })
        normalizer = NotificationNormalizer(google)

        await normalizer.normalize_google(pubsub(notification))
        await normalizer.normalize_google(pubsub(notification))

        assert google.verify.await_count == 2

    @pytest.mark.asyncio
    async def test_decoded_notification_is_accepted(self, google):
        notification = developer_notification(oneTimeProductNotification={
            "notificationType": 1,
            "purchaseToken": "token-xyz",
            "sku": "focus.lifetime",
        })

        event = await NotificationNormalizer(google).normalize_google(notification)

        google.verify.assert_awaited_once_with(PACKAGE_NAME, "focus.lifetime", "token-xyz", False)
        assert event.event_kind == NotificationKind.PURCHASED
        assert event.product_id == "focus.lifetime"

    @pytest.mark.asyncio
    async def test_test_notification_is_ignored(self, google):
        notification = developer_notification(testNotification={"version": "1.0"})

        assert await NotificationNormalizer(google).normalize_google(pubsub(notification)) is None
        google.verify.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            developer_notification(),
            developer_notification(subscriptionNotification={"notificationType": 2}),
            {"message": {"data": "!!!not-base64!!!"}},
            {"message": {"data": 123}},
            {"message": {"data": ["eyJ9"]}},
            developer_notification(subscriptionNotification={
                "notificationType": 2,
                "purchaseToken": ["tok-1"],
                "subscriptionId": "focus.premium",
            }),
            {"message": {"messageId": "1"}},
            "plain string",
        ],
    )
    async def test_malformed_payloads(self, google, payload):
        with pytest.raises(MalformedNotification):
            await NotificationNormalizer(google).normalize_google(payload)

        google.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self, google):
        google.verify.return_value = VerificationResult.invalid(Platform.ANDROID, FailureKind.TRANSPORT)
        notification = developer_notification(subscriptionNotification={
            "notificationType": 2,
            "purchaseToken": "token-abc",
            "subscriptionId": "focus.premium",
        })

        with pytest.raises(TransportFailure):
            await NotificationNormalizer(google).normalize_google(pubsub(notification))

    @pytest.mark.asyncio
    async def test_rejected_token_is_malformed(self, google):
        google.verify.return_value = VerificationResult.invalid(
            Platform.ANDROID,
            FailureKind.UPSTREAM_REJECTION,
            raw_data={"http_status": 410},
        )
        notification = developer_notification(subscriptionNotification={
            "notificationType": 13,
            "purchaseToken": "token-gone",
            "subscriptionId": "focus.premium",
        })

        with pytest.raises(MalformedNotification):
            await NotificationNormalizer(google).normalize_google(pubsub(notification))

    @pytest.mark.asyncio
    async def test_missing_google_verifier(self):
        notification = developer_notification(subscriptionNotification={
            "notificationType": 2,
            "purchaseToken": "token-abc",
            "subscriptionId": "focus.premium",
        })

        with pytest.raises(MissingCredentialsError):
            await NotificationNormalizer(None).normalize_google(pubsub(notification))
