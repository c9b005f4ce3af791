"""
Apple Receipt Verification
==========================

Verifies App Store receipts against Apple's ``verifyReceipt`` endpoint and
maps the response onto ``VerificationResult``.

Routing:
- Every receipt goes to production first.
- Status ``21007`` (sandbox receipt sent to production) triggers exactly one
  call to the sandbox endpoint. Its answer is final; sandbox is never
  retried and never redirected back to production.
- Network errors and timeouts are not retried here.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httpx

from app.core.errors import TransportFailure
from app.models.subscription import Platform, SubscriptionStatus
from app.schemas.verification import FailureKind, VerificationResult

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007
# Receipt could not be authenticated / shared secret mismatch
AUTHORIZATION_STATUSES = frozenset({21003, 21004})


# -----------------------------------------------------------------------------
# Receipt entry helpers (shared with the notification normalizer)
# -----------------------------------------------------------------------------

def ms_to_datetime(value: Any) -> Optional[datetime]:
    """Convert an epoch-milliseconds value (int or numeric string) to UTC."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def entry_expiry(entry: dict[str, Any]) -> Optional[datetime]:
    """Expiration of a receipt entry, if it is a subscription entry."""
    expiry = ms_to_datetime(entry.get("expires_date_ms"))
    if expiry is None:
        # Legacy notification format carries milliseconds under expires_date
        legacy = entry.get("expires_date")
        if isinstance(legacy, (int, str)) and str(legacy).isdigit():
            expiry = ms_to_datetime(legacy)
    return expiry


def latest_receipt_entry(entries: Iterable[Any]) -> Optional[dict[str, Any]]:
    """
    Pick the entry with the greatest expiration date.

    Entries are grouped by ``original_transaction_id``; the lineage of the
    most recent entry wins and its latest-expiring entry is returned.
    """
    candidates = [e for e in entries if isinstance(e, dict)]
    if not candidates:
        return None

    def sort_key(entry: dict[str, Any]) -> tuple[float, int]:
        expiry = entry_expiry(entry)
        purchased = ms_to_datetime(entry.get("purchase_date_ms"))
        return (
            expiry.timestamp() if expiry else float("-inf"),
            int(purchased.timestamp()) if purchased else 0,
        )

    newest = max(candidates, key=sort_key)
    lineage = newest.get("original_transaction_id")
    same_lineage = [
        e for e in candidates if e.get("original_transaction_id") == lineage
    ]
    return max(same_lineage, key=sort_key)


def status_from_expiry(
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> SubscriptionStatus:
    """``active`` when there is no expiry or it lies in the future."""
    if expires_at is None:
        return SubscriptionStatus.ACTIVE
    now = now or datetime.now(timezone.utc)
    return SubscriptionStatus.ACTIVE if expires_at > now else SubscriptionStatus.EXPIRED


# -----------------------------------------------------------------------------
# Adapter
# -----------------------------------------------------------------------------

class AppleReceiptVerifier:
    """App Store ``verifyReceipt`` adapter."""

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        *,
        timeout: float = 10.0,
        production_url: str = PRODUCTION_URL,
        sandbox_url: str = SANDBOX_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.shared_secret = shared_secret or None
        self.timeout = timeout
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self._http_client = http_client

    async def verify(
        self,
        receipt_data: str,
        password: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify a base64 receipt.

        Args:
            receipt_data: Base64-encoded receipt from the device.
            password: Shared secret; overrides the configured one.

        Returns:
            VerificationResult. Never raises for upstream rejections or
            network failures.
        """
        body: dict[str, Any] = {
            "receipt-data": receipt_data,
            "exclude-old-transactions": False,
        }
        secret = password or self.shared_secret
        if secret:
            body["password"] = secret

        try:
            data = await self._post(self.production_url, body)

            if data.get("status") == STATUS_SANDBOX_RECEIPT:
                logger.info("Sandbox receipt sent to production, retrying once against sandbox")
                data = await self._post(self.sandbox_url, body)
        except TransportFailure as exc:
            logger.warning("Apple verifyReceipt transport failure: %s", exc)
            return VerificationResult.invalid(
                Platform.IOS,
                FailureKind.TRANSPORT,
                raw_data={"error": str(exc)},
            )

        return self._to_result(data)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST to Apple and return the decoded body or raise TransportFailure."""
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise TransportFailure(f"timeout calling {url}") from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(f"error calling {url}: {exc}") from exc

        if response.status_code != 200:
            raise TransportFailure(
                f"{url} returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportFailure(f"{url} returned a non-JSON body") from exc

        if not isinstance(data, dict):
            raise TransportFailure(f"{url} returned an unexpected body")
        return data

    # -------------------------------------------------------------------------
    # Response mapping
    # -------------------------------------------------------------------------

    def _to_result(self, data: dict[str, Any]) -> VerificationResult:
        status_code = data.get("status")

        if status_code != STATUS_OK:
            if status_code in AUTHORIZATION_STATUSES:
                logger.error(
                    "Apple rejected receipt authentication (status %s); check APPLE_SHARED_SECRET",
                    status_code,
                )
                failure = FailureKind.AUTHORIZATION
            else:
                logger.info("Apple rejected receipt with status %s", status_code)
                failure = FailureKind.UPSTREAM_REJECTION
            return VerificationResult.invalid(Platform.IOS, failure, raw_data=data)

        entry = latest_receipt_entry(self._receipt_entries(data)) or {}
        lineage = entry.get("original_transaction_id")

        if not lineage or not isinstance(lineage, (str, int)):
            logger.info("Apple receipt verified but contains no transactions")
            return VerificationResult.invalid(
                Platform.IOS,
                FailureKind.UPSTREAM_REJECTION,
                raw_data=data,
            )

        expires_at = entry_expiry(entry)
        product_id = entry.get("product_id")

        return VerificationResult(
            valid=True,
            status=status_from_expiry(expires_at),
            platform=Platform.IOS,
            product_id=product_id if isinstance(product_id, str) else "",
            original_transaction_id=str(lineage),
            transaction_id=(
                str(entry["transaction_id"]) if entry.get("transaction_id") else None
            ),
            expires_at=expires_at,
            raw_data=data,
        )

    @staticmethod
    def _receipt_entries(data: dict[str, Any]) -> list[Any]:
        """Transactions from ``latest_receipt_info``, else ``receipt.in_app``."""
        entries = data.get("latest_receipt_info")
        if isinstance(entries, list) and entries:
            return entries

        receipt = data.get("receipt")
        if isinstance(receipt, dict) and isinstance(receipt.get("in_app"), list):
            return receipt["in_app"]
        return []
