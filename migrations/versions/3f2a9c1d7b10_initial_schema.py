"""initial schema

Revision ID: 3f2a9c1d7b10
Revises:
Create Date: 2026-10-16 09:12:40.118204
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7b10"
down_revision = None
branch_labels = None
depends_on = None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _jsonb(sa_json):
    # Portable: JSON on SQLite, JSONB on Postgres
    return sa_json.with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("donor_name", sa.String(length=160), nullable=False),
        sa.Column("donor_email", sa.String(length=160), nullable=False),
        sa.Column("donor_greeting", sa.String(length=500), nullable=True),
        sa.Column("squares", _jsonb(sa.JSON()), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("mode_data", _jsonb(sa.JSON()), nullable=False),
        sa.Column("timestamp", sa.String(length=40), nullable=False),
        sa.Column("session_id", sa.String(length=120), nullable=True),
        sa.Column("payment_status", sa.String(length=40), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
    )
    with op.batch_alter_table("donations") as batch_op:
        batch_op.create_index(batch_op.f("ix_donations_donor_email"), ["donor_email"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_timestamp"), ["timestamp"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_session_id"), ["session_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_created_at"), ["created_at"], unique=False)
        batch_op.create_index("ix_donations_session_status", ["session_id", "payment_status"], unique=False)

    # --- checkout_sessions ---
    op.create_table(
        "checkout_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("checkout_id", sa.String(length=64), nullable=False),
        sa.Column("stripe_session_id", sa.String(length=120), nullable=True),
        sa.Column("donor_name", sa.String(length=160), nullable=False),
        sa.Column("donor_email", sa.String(length=160), nullable=False),
        sa.Column("donor_greeting", sa.String(length=500), nullable=True),
        sa.Column("squares", _jsonb(sa.JSON()), nullable=False),
        sa.Column("text_squares", _jsonb(sa.JSON()), nullable=False),
        sa.Column("mode_data", _jsonb(sa.JSON()), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("checkout_sessions") as batch_op:
        batch_op.create_index(batch_op.f("ix_checkout_sessions_checkout_id"), ["checkout_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_checkout_sessions_stripe_session_id"), ["stripe_session_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_checkout_sessions_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_checkout_sessions_created_at"), ["created_at"], unique=False)

    # --- stripe_events ---
    op.create_table(
        "stripe_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("livemode", sa.Boolean(), nullable=False),
        sa.Column("object_id", sa.String(length=120), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("stripe_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_stripe_events_event_id"), ["event_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_stripe_events_type"), ["type"], unique=False)
        batch_op.create_index(batch_op.f("ix_stripe_events_object_id"), ["object_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_stripe_events_created_at"), ["created_at"], unique=False)
        batch_op.create_index("ix_stripe_events_type_created", ["type", "created_at"], unique=False)


def downgrade():
    op.drop_table("stripe_events")
    op.drop_table("checkout_sessions")
    op.drop_table("donations")
