"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.subscription import (
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    NotificationKind,
    ReconcileSource,
    Platform,
)

__all__ = [
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionStatus",
    "NotificationKind",
    "ReconcileSource",
    "Platform",
]
