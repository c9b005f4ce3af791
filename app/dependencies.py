"""
Common Dependencies
===================

Wires settings into the adapters, the orchestrator, the normalizer and the
reconciler. Adapters and the record store are built once per process;
credentials are never re-read per request.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends

from app.config import settings
from app.db.session import get_session_factory
from app.services.apple_verifier import AppleReceiptVerifier
from app.services.google_play import GooglePlayVerifier
from app.services.notifications import NotificationNormalizer
from app.services.reconciler import SubscriptionReconciler
from app.services.record_store import InMemoryRecordStore, RecordStore, SqlRecordStore
from app.services.verification import VerificationOrchestrator

logger = logging.getLogger(__name__)


@lru_cache
def get_record_store() -> RecordStore:
    """SQL store when a database is configured, otherwise in-memory."""
    if settings.database_url_async:
        return SqlRecordStore(get_session_factory())

    logger.warning("DATABASE_URL not set, using in-memory subscription store")
    return InMemoryRecordStore()


@lru_cache
def get_apple_verifier() -> AppleReceiptVerifier:
    """App Store adapter built from settings."""
    if not settings.APPLE_SHARED_SECRET:
        logger.warning("APPLE_SHARED_SECRET not configured; auto-renewable receipts will fail")
    return AppleReceiptVerifier(
        settings.APPLE_SHARED_SECRET,
        timeout=settings.VERIFY_TIMEOUT_SECONDS,
        production_url=settings.APPLE_PRODUCTION_URL,
        sandbox_url=settings.APPLE_SANDBOX_URL,
    )


@lru_cache
def get_google_verifier() -> Optional[GooglePlayVerifier]:
    """Google Play adapter, or None when no service account is configured."""
    if not settings.GOOGLE_APPLICATION_CREDENTIALS:
        logger.warning("GOOGLE_APPLICATION_CREDENTIALS not configured, Google Play verification disabled")
        return None
    return GooglePlayVerifier.from_service_account_file(
        settings.GOOGLE_APPLICATION_CREDENTIALS,
        settings.GOOGLE_PLAY_PACKAGE_NAME,
        timeout=settings.VERIFY_TIMEOUT_SECONDS,
    )


def get_orchestrator(
    apple: Annotated[AppleReceiptVerifier, Depends(get_apple_verifier)],
    google: Annotated[Optional[GooglePlayVerifier], Depends(get_google_verifier)],
) -> VerificationOrchestrator:
    return VerificationOrchestrator(apple, google)


def get_normalizer(
    google: Annotated[Optional[GooglePlayVerifier], Depends(get_google_verifier)],
) -> NotificationNormalizer:
    return NotificationNormalizer(google)


def get_reconciler(
    store: Annotated[RecordStore, Depends(get_record_store)],
) -> SubscriptionReconciler:
    return SubscriptionReconciler(store)


Orchestrator = Annotated[VerificationOrchestrator, Depends(get_orchestrator)]
Normalizer = Annotated[NotificationNormalizer, Depends(get_normalizer)]
Reconciler = Annotated[SubscriptionReconciler, Depends(get_reconciler)]
Store = Annotated[RecordStore, Depends(get_record_store)]
