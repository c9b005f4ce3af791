"""
Subscription Reconciler
=======================

Merges verification results and webhook notifications into the stored
``Subscription`` for a purchase lineage.

State machine per lineage::

    NONE -> ACTIVE <-> EXPIRED
    ACTIVE -> CANCELLED
    EXPIRED -> ACTIVE      (resubscription)
    CANCELLED -> ACTIVE    (restart or resubscription)

Ordering rule:
- A candidate whose expiry is older than the stored expiry is ignored
  unless it is a cancellation.
- A cancellation always applies, but never moves the stored expiry or
  transaction id backward.
- A candidate that would not change anything is a no-op, which makes
  duplicate deliveries safe.

All reads and writes for one lineage happen inside a single
``RecordStore.upsert_by_lineage`` call, so concurrent applies serialize.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.models.subscription import (
    NotificationKind,
    Platform,
    ReconcileSource,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.schemas.verification import NotificationEvent, VerificationResult
from app.services.apple_verifier import status_from_expiry
from app.services.record_store import Mutation, RecordStore

logger = logging.getLogger(__name__)

# Event kinds that assert an entitlement for the current period
_ENTITLING_KINDS = frozenset({
    NotificationKind.PURCHASED,
    NotificationKind.RENEWED,
    NotificationKind.RECOVERED,
})


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_older(candidate: Optional[datetime], stored: Optional[datetime]) -> bool:
    return candidate is not None and stored is not None and candidate < stored


@dataclass(frozen=True)
class Candidate:
    """Common shape of every input to the reconciler."""

    original_transaction_id: str
    status: Optional[SubscriptionStatus]  # None: audit only
    expires_at: Optional[datetime]
    transaction_id: Optional[str]
    raw_data: dict[str, Any] = field(default_factory=dict)
    platform: Platform = Platform.IOS
    product_id: Optional[str] = None
    user_id: Optional[str] = None
    source: ReconcileSource = ReconcileSource.VERIFICATION
    event_kind: Optional[NotificationKind] = None

    @classmethod
    def from_verification(
        cls,
        result: VerificationResult,
        user_id: Optional[str] = None,
    ) -> "Candidate":
        return cls(
            original_transaction_id=result.original_transaction_id,
            status=result.status,
            expires_at=as_utc(result.expires_at),
            transaction_id=result.transaction_id,
            raw_data=dict(result.raw_data),
            platform=result.platform,
            product_id=result.product_id or None,
            user_id=user_id,
            source=ReconcileSource.VERIFICATION,
        )

    @classmethod
    def from_notification(
        cls,
        event: NotificationEvent,
        now: Optional[datetime] = None,
    ) -> "Candidate":
        expires_at = as_utc(event.expires_at)
        kind = event.event_kind

        if kind in _ENTITLING_KINDS:
            status = status_from_expiry(expires_at, now)
        elif kind == NotificationKind.CANCELLED:
            status = SubscriptionStatus.CANCELLED
        elif kind == NotificationKind.EXPIRED:
            status = SubscriptionStatus.EXPIRED
        elif kind == NotificationKind.FAILED_RENEWAL and expires_at is not None:
            # Access continues until the paid period ends
            status = status_from_expiry(expires_at, now)
        else:
            status = None

        return cls(
            original_transaction_id=event.original_transaction_id,
            status=status,
            expires_at=expires_at if status is not None else None,
            transaction_id=event.transaction_id,
            raw_data=dict(event.raw_data),
            platform=event.platform,
            product_id=event.product_id,
            source=ReconcileSource.NOTIFICATION,
            event_kind=kind,
        )


class SubscriptionReconciler:
    """Sole writer of ``Subscription`` records."""

    def __init__(self, store: RecordStore):
        self.store = store

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def reconcile_verification(
        self,
        result: VerificationResult,
        user_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Apply a client-initiated verification.

        Invalid results are never persisted; the current record for the
        lineage (if known) is returned unchanged.
        """
        if not result.valid:
            logger.info(
                "Skipping reconcile of invalid %s verification (failure=%s)",
                result.platform.value,
                result.failure.value if result.failure else None,
            )
            if result.original_transaction_id:
                return await self.store.find_by_lineage(result.original_transaction_id)
            return None

        return await self.apply(Candidate.from_verification(result, user_id=user_id))

    async def reconcile_notification(self, event: NotificationEvent) -> Subscription:
        """Apply a normalized webhook notification."""
        return await self.apply(Candidate.from_notification(event))

    async def apply(self, candidate: Candidate) -> Subscription:
        """Merge ``candidate`` into the stored record for its lineage."""

        def mutate(existing: Optional[Subscription]) -> Mutation:
            if existing is None:
                return self._create(candidate)
            return self._update(existing, candidate)

        return await self.store.upsert_by_lineage(
            candidate.original_transaction_id,
            mutate,
        )

    # -------------------------------------------------------------------------
    # Transition rules
    # -------------------------------------------------------------------------

    def _create(self, candidate: Candidate) -> Mutation:
        now = datetime.now(timezone.utc)
        record = Subscription(
            subscription_id=uuid.uuid4(),
            user_id=candidate.user_id,
            platform=candidate.platform,
            product_id=candidate.product_id or "",
            transaction_id=candidate.transaction_id or candidate.original_transaction_id,
            original_transaction_id=candidate.original_transaction_id,
            status=candidate.status or SubscriptionStatus.UNKNOWN,
            expires_at=candidate.expires_at,
            last_event_kind=candidate.event_kind,
            raw_data=candidate.raw_data,
            created_at=now,
            updated_at=now,
        )

        logger.info(
            "Created subscription lineage=%s status=%s expires_at=%s source=%s",
            record.original_transaction_id,
            record.status.value,
            record.expires_at,
            candidate.source.value,
        )
        return Mutation(record, self._history(record, candidate, previous_status=None, now=now))

    def _update(self, existing: Subscription, candidate: Candidate) -> Mutation:
        changes = self._plan_changes(existing, candidate)

        if not changes:
            logger.info(
                "No-op reconcile for lineage=%s status=%s source=%s kind=%s",
                existing.original_transaction_id,
                candidate.status.value if candidate.status else None,
                candidate.source.value,
                candidate.event_kind.value if candidate.event_kind else None,
            )
            return Mutation(existing)

        now = datetime.now(timezone.utc)
        previous_status = existing.status
        for attr, value in changes.items():
            setattr(existing, attr, value)
        existing.updated_at = now

        logger.info(
            "Updated subscription lineage=%s %s -> %s expires_at=%s source=%s",
            existing.original_transaction_id,
            previous_status.value,
            existing.status.value,
            existing.expires_at,
            candidate.source.value,
        )
        return Mutation(
            existing,
            self._history(existing, candidate, previous_status=previous_status, now=now),
        )

    def _plan_changes(self, existing: Subscription, candidate: Candidate) -> dict[str, Any]:
        """
        Work out which columns ``candidate`` changes.

        Returns an empty dict when the candidate must be ignored or would not
        change anything.
        """
        stored_expiry = as_utc(existing.expires_at)
        candidate_expiry = candidate.expires_at
        target: dict[str, Any] = {}

        if candidate.status is None:
            # Unrecognized notification: the payload goes to history only
            target["last_event_kind"] = candidate.event_kind
            return self._diff(existing, target)

        cancelling = candidate.status == SubscriptionStatus.CANCELLED
        older = _is_older(candidate_expiry, stored_expiry)

        if older and not cancelling:
            logger.info(
                "Ignoring stale %s for lineage=%s (candidate expiry %s < stored %s)",
                candidate.status.value,
                existing.original_transaction_id,
                candidate_expiry,
                stored_expiry,
            )
            return {}

        target["status"] = candidate.status
        if not older:
            if candidate_expiry is not None:
                target["expires_at"] = candidate_expiry
            if candidate.transaction_id:
                target["transaction_id"] = candidate.transaction_id
        if candidate.product_id:
            target["product_id"] = candidate.product_id
        if candidate.user_id and not existing.user_id:
            target["user_id"] = candidate.user_id
        if candidate.event_kind is not None:
            target["last_event_kind"] = candidate.event_kind

        changes = self._diff(existing, target)
        if changes:
            # Raw payload follows the state it produced
            changes["raw_data"] = candidate.raw_data
        return changes

    @staticmethod
    def _diff(existing: Subscription, target: dict[str, Any]) -> dict[str, Any]:
        changes = {}
        for attr, value in target.items():
            current = getattr(existing, attr)
            if attr == "expires_at":
                current = as_utc(current)
            if current != value:
                changes[attr] = value
        return changes

    @staticmethod
    def _history(
        record: Subscription,
        candidate: Candidate,
        previous_status: Optional[SubscriptionStatus],
        now: datetime,
    ) -> SubscriptionHistory:
        return SubscriptionHistory(
            history_id=uuid.uuid4(),
            subscription=record,
            original_transaction_id=record.original_transaction_id,
            source=candidate.source,
            event_kind=candidate.event_kind,
            previous_status=previous_status.value if previous_status else None,
            new_status=record.status.value,
            transaction_id=candidate.transaction_id,
            expires_at=candidate.expires_at,
            raw_data=candidate.raw_data,
            created_at=now,
        )
