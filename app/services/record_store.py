"""
Subscription Record Store
=========================

Keyed storage for ``Subscription`` rows with an atomic
read-modify-write per purchase lineage.

``SqlRecordStore`` locks the lineage row (``SELECT ... FOR UPDATE``) for the
duration of the mutator, so concurrent applies for the same lineage run one
after another even across processes. ``InMemoryRecordStore`` gives the same
guarantee inside a single process and backs local development when no
database is configured.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.subscription import Subscription, SubscriptionHistory

logger = logging.getLogger(__name__)


@dataclass
class Mutation:
    """What a mutator wants persisted."""

    record: Subscription
    history: Optional[SubscriptionHistory] = None


Mutator = Callable[[Optional[Subscription]], Mutation]


class RecordStore(ABC):
    """Storage contract used by the reconciler."""

    @abstractmethod
    async def upsert_by_lineage(
        self,
        original_transaction_id: str,
        mutator: Mutator,
    ) -> Subscription:
        """
        Atomically read, mutate and write the record for a lineage.

        ``mutator`` receives the current record (or None) and must not
        perform I/O. It may be invoked more than once if the store retries.
        """

    @abstractmethod
    async def find_by_lineage(
        self,
        original_transaction_id: str,
    ) -> Optional[Subscription]:
        """Return the record for a lineage, if one exists."""

    @abstractmethod
    async def list_history(
        self,
        original_transaction_id: str,
    ) -> list[SubscriptionHistory]:
        """Return audit entries for a lineage, oldest first."""


class SqlRecordStore(RecordStore):
    """Record store backed by SQLAlchemy (PostgreSQL in production)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert_by_lineage(
        self,
        original_transaction_id: str,
        mutator: Mutator,
    ) -> Subscription:
        # A concurrent insert of the same lineage loses on the unique index;
        # the second attempt then finds and locks the winner's row.
        for attempt in range(2):
            inserted = False
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        stmt = (
                            select(Subscription)
                            .where(Subscription.original_transaction_id == original_transaction_id)
                            .with_for_update()
                        )
                        result = await session.execute(stmt)
                        existing = result.scalar_one_or_none()

                        mutation = mutator(existing)

                        if existing is None:
                            inserted = True
                            session.add(mutation.record)
                        if mutation.history is not None:
                            session.add(mutation.history)

                return mutation.record
            except IntegrityError:
                if inserted and attempt == 0:
                    logger.info(
                        "Concurrent insert for lineage %s, retrying as update",
                        original_transaction_id,
                    )
                    continue
                raise

        raise RuntimeError("unreachable")  # pragma: no cover

    async def find_by_lineage(
        self,
        original_transaction_id: str,
    ) -> Optional[Subscription]:
        async with self._session_factory() as session:
            stmt = select(Subscription).where(
                Subscription.original_transaction_id == original_transaction_id
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_history(
        self,
        original_transaction_id: str,
    ) -> list[SubscriptionHistory]:
        async with self._session_factory() as session:
            stmt = (
                select(SubscriptionHistory)
                .where(SubscriptionHistory.original_transaction_id == original_transaction_id)
                .order_by(SubscriptionHistory.created_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())


class InMemoryRecordStore(RecordStore):
    """
    Process-local record store.

    Holds records in a dict keyed by lineage and serializes upserts for the
    same lineage with a per-key ``asyncio.Lock``. Transaction id uniqueness
    is not enforced.
    """

    def __init__(self) -> None:
        self._records: dict[str, Subscription] = {}
        self._history: dict[str, list[SubscriptionHistory]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, original_transaction_id: str) -> asyncio.Lock:
        return self._locks.setdefault(original_transaction_id, asyncio.Lock())

    async def upsert_by_lineage(
        self,
        original_transaction_id: str,
        mutator: Mutator,
    ) -> Subscription:
        async with self._lock_for(original_transaction_id):
            existing = self._records.get(original_transaction_id)
            mutation = mutator(existing)

            self._records[original_transaction_id] = mutation.record
            if mutation.history is not None:
                self._history.setdefault(original_transaction_id, []).append(
                    mutation.history
                )
            return mutation.record

    async def find_by_lineage(
        self,
        original_transaction_id: str,
    ) -> Optional[Subscription]:
        return self._records.get(original_transaction_id)

    async def list_history(
        self,
        original_transaction_id: str,
    ) -> list[SubscriptionHistory]:
        return list(self._history.get(original_transaction_id, []))
