"""
Verification API Endpoints
==========================

Client-initiated receipt verification and subscription lookup.

Authentication is handled upstream of this service; ``user_id`` is taken
from the request body as-is.
"""

import logging

from fastapi import APIRouter

from app.core.errors import ErrorCodes, NotFoundError
from app.dependencies import Orchestrator, Reconciler, Store
from app.schemas.verification import (
    SubscriptionRecordResponse,
    SubscriptionResponse,
    VerifyRequest,
    VerifyResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/verify",
    response_model=VerifyResponse,
)
async def verify_purchase(
    request: VerifyRequest,
    orchestrator: Orchestrator,
    reconciler: Reconciler,
):
    """
    Verify a receipt with Apple or Google and reconcile the result.

    iOS payload: ``{"receipt_data": "...", "password": "..."}``
    Android payload: ``{"package_name": "...", "product_id": "...",
    "purchase_token": "...", "is_subscription": true}``

    An invalid receipt is still a 200 response with ``result.valid=false``;
    only an unsupported platform or a malformed payload is rejected.
    """
    result = await orchestrator.verify(request.platform, request.payload)
    subscription = await reconciler.reconcile_verification(
        result,
        user_id=request.user_id,
    )

    logger.info(
        "Verification %s: platform=%s lineage=%s status=%s",
        "succeeded" if result.valid else "failed",
        result.platform.value,
        result.original_transaction_id or "-",
        result.status.value,
    )

    return VerifyResponse(
        success=True,
        data={
            "result": result.model_dump(mode="json", exclude={"raw_data"}),
            "subscription": (
                SubscriptionRecordResponse.model_validate(subscription).model_dump(mode="json")
                if subscription is not None
                else None
            ),
        },
    )


@router.get(
    "/subscriptions/{original_transaction_id}",
    response_model=SubscriptionResponse,
)
async def get_subscription(
    original_transaction_id: str,
    store: Store,
):
    """Return the reconciled subscription for a purchase lineage."""
    subscription = await store.find_by_lineage(original_transaction_id)
    if subscription is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_NOT_FOUND,
            message="Subscription not found",
        )

    return SubscriptionResponse(
        success=True,
        data=SubscriptionRecordResponse.model_validate(subscription),
    )
