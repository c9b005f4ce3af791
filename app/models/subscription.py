"""
Subscription Models
===================

SQLAlchemy models for reconciled store subscriptions.

One ``Subscription`` row exists per purchase lineage (Apple
``original_transaction_id`` / Google base order id). Rows are never
deleted; cancellation and expiry are status transitions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    Uuid,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class SubscriptionStatus(str, Enum):
    """Normalized subscription status values."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class Platform(str, Enum):
    """Purchase platform."""
    IOS = "ios"
    ANDROID = "android"


class NotificationKind(str, Enum):
    """Platform-agnostic notification vocabulary."""
    PURCHASED = "purchased"
    RENEWED = "renewed"
    RECOVERED = "recovered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED_RENEWAL = "failed_renewal"
    UNKNOWN = "unknown"


class ReconcileSource(str, Enum):
    """Where a reconciled change came from."""
    VERIFICATION = "verification"
    NOTIFICATION = "notification"


class Subscription(Base, TimestampMixin):
    """
    Subscription record keyed by purchase lineage.

    ``transaction_id`` tracks the most recent purchase/renewal and changes
    on every renewal; ``original_transaction_id`` never changes.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owner (resolved by the caller; webhooks may create ownerless rows)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    # Store identifiers
    transaction_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    original_transaction_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # State
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.UNKNOWN,
        nullable=False,
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null for non-subscription purchases
    )
    last_event_kind: Mapped[Optional[NotificationKind]] = mapped_column(
        SQLEnum(NotificationKind),
        nullable=True,
    )

    # Last upstream payload, kept for audit
    raw_data: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Indexes
    __table_args__ = (
        Index("idx_subscription_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(original_transaction_id={self.original_transaction_id}, "
            f"status={self.status}, expires_at={self.expires_at})>"
        )


class SubscriptionHistory(Base):
    """
    Subscription history model.

    Tracks every applied state change for audit trail.
    """

    __tablename__ = "subscription_history"

    # Primary Key
    history_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )
    original_transaction_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Event details
    source: Mapped[ReconcileSource] = mapped_column(
        SQLEnum(ReconcileSource),
        nullable=False,
    )
    event_kind: Mapped[Optional[NotificationKind]] = mapped_column(
        SQLEnum(NotificationKind),
        nullable=True,
    )
    previous_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    new_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    raw_data: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    subscription: Mapped["Subscription"] = relationship("Subscription")

    # Indexes
    __table_args__ = (
        Index("idx_sub_history_subscription", "subscription_id", "created_at"),
        Index("idx_sub_history_lineage", "original_transaction_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(original_transaction_id={self.original_transaction_id}, "
            f"{self.previous_status} -> {self.new_status})>"
        )
