"""Create subscriptions and subscription_history tables

Revision ID: 3f7a9c21d0b4
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f7a9c21d0b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum values are stored by member name
PLATFORM_VALUES = ("IOS", "ANDROID")
STATUS_VALUES = ("ACTIVE", "EXPIRED", "CANCELLED", "UNKNOWN")
KIND_VALUES = (
    "PURCHASED",
    "RENEWED",
    "RECOVERED",
    "CANCELLED",
    "EXPIRED",
    "FAILED_RENEWAL",
    "UNKNOWN",
)
SOURCE_VALUES = ("VERIFICATION", "NOTIFICATION")


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. subscriptions: one row per purchase lineage
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("platform", sa.Enum(*PLATFORM_VALUES, name="platform"), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*STATUS_VALUES, name="subscriptionstatus"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_event_kind",
            sa.Enum(*KIND_VALUES, name="notificationkind"),
            nullable=True,
        ),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index(
        op.f("ix_subscriptions_original_transaction_id"),
        "subscriptions",
        ["original_transaction_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_subscriptions_user_id"),
        "subscriptions",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        "idx_subscription_status_expires",
        "subscriptions",
        ["status", "expires_at"],
        unique=False,
    )

    # ------------------------------------------------------------------
    # 2. subscription_history: append-only audit trail
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_history",
        sa.Column("history_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=False),
        sa.Column(
            "source",
            sa.Enum(*SOURCE_VALUES, name="reconcilesource"),
            nullable=False,
        ),
        sa.Column(
            "event_kind",
            sa.Enum(*KIND_VALUES, name="notificationkind", create_type=False),
            nullable=True,
        ),
        sa.Column("previous_status", sa.String(length=50), nullable=True),
        sa.Column("new_status", sa.String(length=50), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.subscription_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index(
        "idx_sub_history_subscription",
        "subscription_history",
        ["subscription_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_sub_history_lineage",
        "subscription_history",
        ["original_transaction_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_sub_history_lineage", table_name="subscription_history")
    op.drop_index("idx_sub_history_subscription", table_name="subscription_history")
    op.drop_table("subscription_history")

    op.drop_index("idx_subscription_status_expires", table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_user_id"), table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_original_transaction_id"), table_name="subscriptions")
    op.drop_table("subscriptions")

    sa.Enum(name="reconcilesource").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="notificationkind").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="platform").drop(op.get_bind(), checkfirst=True)
