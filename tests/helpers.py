"""
Test Helpers
============

Payload builders and httpx ``MockTransport`` stubs for the Apple and Google
endpoints.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import httpx

from app.services.apple_verifier import AppleReceiptVerifier
from app.services.google_play import GooglePlayVerifier

PACKAGE_NAME = "com.example.focus"


def to_ms(value: datetime) -> str:
    """Epoch milliseconds as Apple and Google send them (numeric string)."""
    return str(int(value.timestamp() * 1000))


def in_days(days: float) -> datetime:
    """A whole-second UTC timestamp ``days`` from now."""
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0)


def apple_entry(
    *,
    original_transaction_id: str = "1000000000000001",
    transaction_id: str = "1000000000000001",
    product_id: str = "focus.premium.monthly",
    expires_at: Optional[datetime] = None,
    purchased_at: Optional[datetime] = None,
) -> dict[str, Any]:
    """One ``latest_receipt_info`` entry."""
    entry = {
        "original_transaction_id": original_transaction_id,
        "transaction_id": transaction_id,
        "product_id": product_id,
        "purchase_date_ms": to_ms(purchased_at or in_days(-1)),
    }
    if expires_at is not None:
        entry["expires_date_ms"] = to_ms(expires_at)
    return entry


def apple_body(status: int = 0, entries: Optional[list] = None) -> dict[str, Any]:
    """A ``verifyReceipt`` response body."""
    body: dict[str, Any] = {"status": status}
    if status == 0:
        body["receipt"] = {"bundle_id": "com.example.focus", "in_app": []}
        body["latest_receipt_info"] = entries or []
    return body


class Recorder:
    """Collects the requests a ``MockTransport`` handler receives."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]

    def json_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def fake_credentials(token: str = "test-access-token") -> MagicMock:
    """google-auth credentials that never need a refresh."""
    credentials = MagicMock()
    credentials.valid = True
    credentials.token = token
    return credentials


def make_apple_verifier(handler, shared_secret: str = "shared-secret") -> AppleReceiptVerifier:
    return AppleReceiptVerifier(
        shared_secret,
        timeout=5.0,
        http_client=mock_client(handler),
    )


def make_google_verifier(handler) -> GooglePlayVerifier:
    return GooglePlayVerifier(
        fake_credentials(),
        PACKAGE_NAME,
        timeout=5.0,
        http_client=mock_client(handler),
    )
