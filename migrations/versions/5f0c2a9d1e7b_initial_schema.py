"""initial schema

Revision ID: 5f0c2a9d1e7b
Revises:
Create Date: 2026-10-18 09:12:41.306118
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5f0c2a9d1e7b"
down_revision = None
branch_labels = None
depends_on = None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _jsonb(sa_json):
    # Portable: JSON on SQLite, JSONB on Postgres
    return sa_json.with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade():
    # --- campaigns ---
    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(length=80), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("goal_minor", sa.Integer(), nullable=False),
        sa.Column("base_received_minor", sa.Integer(), nullable=False),
        sa.Column("adjustments_minor", sa.Integer(), nullable=False),
        sa.Column("total_minor", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("goal_minor >= 0", name="ck_campaigns_goal_nonneg"),
        sa.CheckConstraint("total_minor >= 0", name="ck_campaigns_total_nonneg"),
    )
    with op.batch_alter_table("campaigns") as batch_op:
        batch_op.create_index(batch_op.f("ix_campaigns_slug"), ["slug"], unique=True)
        batch_op.create_index(batch_op.f("ix_campaigns_created_at"), ["created_at"], unique=False)

    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=160), nullable=False),
        sa.Column("donor_name", sa.String(length=160), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=12), nullable=False),
        sa.Column("anonymous", sa.Boolean(), nullable=False),
        sa.Column("payment_channel", sa.String(length=40), nullable=True),
        sa.Column("gateway_response", sa.String(length=255), nullable=True),
        sa.Column("event_id", sa.String(length=160), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("donation_type", sa.String(length=80), nullable=True),
        sa.Column("campaign", sa.String(length=160), nullable=True),
        sa.Column("campaign_counted", sa.Boolean(), nullable=False),
        sa.Column("metadata", _jsonb(sa.JSON()), nullable=True),
        sa.Column("verification_snapshot", _jsonb(sa.JSON()), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_minor >= 0", name="ck_donations_amount_nonneg"),
    )
    with op.batch_alter_table("donations") as batch_op:
        batch_op.create_index(batch_op.f("ix_donations_reference"), ["reference"], unique=True)
        batch_op.create_index(batch_op.f("ix_donations_email"), ["email"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_donation_type"), ["donation_type"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_campaign"), ["campaign"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_created_at"), ["created_at"], unique=False)
        batch_op.create_index("ix_donations_status_created", ["status", "created_at"], unique=False)

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=160), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payload", _jsonb(sa.JSON()), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
    )
    with op.batch_alter_table("webhook_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_webhook_events_event_id"), ["event_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_webhook_events_event_type"), ["event_type"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_reference"), ["reference"], unique=False)
        batch_op.create_index("ix_webhook_events_status_created", ["status", "created_at"], unique=False)

    # --- outbox_messages ---
    op.create_table(
        "outbox_messages",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("dedupe_key", sa.String(length=200), nullable=False),
        sa.Column("payload", _jsonb(sa.JSON()), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("dedupe_key", name="uq_outbox_messages_dedupe_key"),
    )
    with op.batch_alter_table("outbox_messages") as batch_op:
        batch_op.create_index(batch_op.f("ix_outbox_messages_kind"), ["kind"], unique=False)
        batch_op.create_index("ix_outbox_status_created", ["status", "created_at"], unique=False)


def downgrade():
    with op.batch_alter_table("outbox_messages") as batch_op:
        batch_op.drop_index("ix_outbox_status_created")
        batch_op.drop_index(batch_op.f("ix_outbox_messages_kind"))
    op.drop_table("outbox_messages")

    with op.batch_alter_table("webhook_events") as batch_op:
        batch_op.drop_index("ix_webhook_events_status_created")
        batch_op.drop_index(batch_op.f("ix_webhook_events_reference"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_event_type"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_event_id"))
    op.drop_table("webhook_events")

    with op.batch_alter_table("donations") as batch_op:
        batch_op.drop_index("ix_donations_status_created")
        batch_op.drop_index(batch_op.f("ix_donations_created_at"))
        batch_op.drop_index(batch_op.f("ix_donations_campaign"))
        batch_op.drop_index(batch_op.f("ix_donations_donation_type"))
        batch_op.drop_index(batch_op.f("ix_donations_status"))
        batch_op.drop_index(batch_op.f("ix_donations_email"))
        batch_op.drop_index(batch_op.f("ix_donations_reference"))
    op.drop_table("donations")

    with op.batch_alter_table("campaigns") as batch_op:
        batch_op.drop_index(batch_op.f("ix_campaigns_created_at"))
        batch_op.drop_index(batch_op.f("ix_campaigns_slug"))
    op.drop_table("campaigns")
