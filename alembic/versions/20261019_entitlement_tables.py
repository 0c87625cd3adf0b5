"""Create subscription, email index, user and usage tables.

Revision ID: 5e1f0c2a9b7d
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "5e1f0c2a9b7d"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True, index=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("type", sa.String(50), nullable=False, server_default="free"),
        sa.Column("source", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True, index=True),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_subscriptions_email_provider", "subscriptions", ["email", "provider_subscription_id"],
    )
    op.create_table(
        "subscription_email_index",
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("subscription_id", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("email", "subscription_id"),
    )
    op.create_index(
        "ix_subscription_email_index_subscription", "subscription_email_index", ["subscription_id"],
    )
    op.create_table(
        "users",
        sa.Column("email", sa.String(320), primary_key=True),
        sa.Column("subscription_id", sa.String(255), nullable=True, index=True),
        sa.Column("subscription_type", sa.String(50), nullable=False, server_default="free"),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "usage_counters",
        sa.Column("identifier", sa.String(320), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("details", sa.JSON, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("identifier", "month"),
    )


def downgrade() -> None:
    op.drop_table("usage_counters")
    op.drop_table("users")
    op.drop_index("ix_subscription_email_index_subscription", table_name="subscription_email_index")
    op.drop_table("subscription_email_index")
    op.drop_index("ix_subscriptions_email_provider", table_name="subscriptions")
    op.drop_table("subscriptions")
