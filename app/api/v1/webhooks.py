"""
Webhooks API Endpoints
======================

Handles store notifications:
- Apple App Store server notifications (``/apple``)
- Google Play real-time developer notifications via Pub/Sub push (``/google``)

Malformed payloads are logged and acknowledged so the platform stops
redelivering them. Storage failures return 500 and Google token resolution
failures return 503, so the platform retries.

Idempotency:
    Both platforms deliver at least once. Duplicate deliveries are absorbed
    by the reconciler's ordering rule; no separate event-id cache is kept.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from app.core.errors import (
    ErrorCodes,
    MalformedNotification,
    ServiceUnavailableError,
    TransportFailure,
)
from app.dependencies import Normalizer, Reconciler
from app.schemas.verification import NotificationEvent
from app.services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_json(request: Request) -> Any:
    """Decode the request body, mapping bad JSON to MalformedNotification."""
    try:
        body = await request.body()
        return json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedNotification(f"Invalid JSON payload: {e}") from e


async def _reconcile(
    reconciler: SubscriptionReconciler,
    event: NotificationEvent,
) -> dict:
    try:
        subscription = await reconciler.reconcile_notification(event)
    except Exception:
        logger.exception(
            "Webhook processing error: platform=%s kind=%s lineage=%s",
            event.platform.value,
            event.event_kind.value,
            event.original_transaction_id,
        )
        # Return 500 so the store retries
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing webhook",
        )

    logger.info(
        "Webhook processed: platform=%s kind=%s type=%s lineage=%s status=%s",
        event.platform.value,
        event.event_kind.value,
        event.notification_type,
        event.original_transaction_id,
        subscription.status.value,
    )
    return {
        "received": True,
        "original_transaction_id": subscription.original_transaction_id,
        "status": subscription.status.value,
    }


@router.post("/apple")
async def apple_webhook(
    request: Request,
    normalizer: Normalizer,
    reconciler: Reconciler,
):
    """
    Handle App Store server notifications.

    Types mapped: INITIAL_BUY, DID_RENEW, DID_RECOVER, DID_FAIL_TO_RENEW,
    DID_CANCEL, EXPIRED. Anything else is stored for audit without a
    status change.
    """
    try:
        payload = await _read_json(request)
        event = normalizer.normalize_apple(payload)
    except MalformedNotification as e:
        logger.warning("Dropping malformed Apple notification: %s", e)
        return {"received": True, "dropped": True}

    return await _reconcile(reconciler, event)


@router.post("/google")
async def google_webhook(
    request: Request,
    normalizer: Normalizer,
    reconciler: Reconciler,
):
    """
    Handle Google Play real-time developer notifications.

    The purchase token in each notification is re-verified with the Play
    Developer API to resolve its lineage before reconciliation.
    """
    try:
        payload = await _read_json(request)
        event = await normalizer.normalize_google(payload)
    except MalformedNotification as e:
        logger.warning("Dropping malformed Google notification: %s", e)
        return {"received": True, "dropped": True}
    except TransportFailure as e:
        logger.warning("Google token resolution failed, asking for redelivery: %s", e)
        raise ServiceUnavailableError(
            code=ErrorCodes.HOOK_UPSTREAM_UNAVAILABLE,
            message="Google Play API unavailable",
        )

    if event is None:
        return {"received": True}

    return await _reconcile(reconciler, event)
