"""create_subscriber_tables

Revision ID: 3f9c1e7a2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c1e7a2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "subscribers",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("phone_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("customer_ref", sa.String(255), nullable=True),
        # Exclusive-update lease
        sa.Column("lock_owner", sa.String(64), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscribers_email", "subscribers", ["email"], unique=True)
    op.create_index("ix_subscribers_role", "subscribers", ["role"])
    op.create_index("ix_subscribers_customer_ref", "subscribers", ["customer_ref"])

    op.create_table(
        "preferences",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.UUID(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("audience", sa.JSON(), nullable=False),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("distribution", sa.JSON(), nullable=False),
        sa.Column("risk", sa.JSON(), nullable=False),
        sa.Column("alert_by_email", sa.Boolean(), nullable=False),
        sa.Column("alert_by_phone", sa.Boolean(), nullable=False),
        sa.Column("send_summaries", sa.Boolean(), nullable=False),
        sa.Column("alert_for_vehicles", sa.Boolean(), nullable=False),
        sa.Column("send_vehicle_summaries", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_preferences_subscriber_id", "preferences", ["subscriber_id"])

    op.create_table(
        "entitlements",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.UUID(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(255), nullable=False),
        sa.Column("billing_reference", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("renews_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("recall_feature", sa.Boolean(), nullable=False),
        sa.Column("vehicle_slot_count", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_entitlements_subscriber_id", "entitlements", ["subscriber_id"])
    op.create_index("ix_entitlements_billing_reference", "entitlements", ["billing_reference"])
    op.create_index("ix_entitlements_expires_at", "entitlements", ["expires_at"])

    op.create_table(
        "vehicle_slots",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "entitlement_id",
            sa.UUID(),
            sa.ForeignKey("entitlements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("vin", sa.String(17), nullable=True),
        sa.Column("vehicle_key", sa.String(255), nullable=True),
        sa.Column("reviewed", sa.Boolean(), nullable=False),
        sa.Column("vin_updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_vehicle_slots_entitlement_id", "vehicle_slots", ["entitlement_id"])
    op.create_index("ix_vehicle_slots_vehicle_key", "vehicle_slots", ["vehicle_key"])


def downgrade() -> None:
    op.drop_table("vehicle_slots")
    op.drop_table("entitlements")
    op.drop_table("preferences")
    op.drop_table("subscribers")
