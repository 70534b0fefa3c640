"""create users, bookings, escrows, ledger, payouts, webhook events, notifications

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), server_default="client", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("payout_methods", sa.JSON(), nullable=False, server_default="[]"),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])

    op.create_table(
        "escrows",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("hold_provider", sa.String(20), nullable=False),
        sa.Column("provider_hold_id", sa.String(128), nullable=True),
        sa.Column("provider_capture_id", sa.String(128), nullable=True),
        sa.Column("status", sa.String(30), server_default="CREATED", nullable=False),
        sa.Column("proof_documents", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("proof_notes", sa.Text(), nullable=True),
        sa.Column("proof_uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_approved", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("client_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_raised", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("dispute_raised_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_raised_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("dispute_evidence", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("dispute_previous_status", sa.String(30), nullable=True),
        sa.Column("resolution_decision", sa.String(20), nullable=True),
        sa.Column("resolution_decided_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolution_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("flagged_as_stuck", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("stuck_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_refund_attempted", sa.Boolean(), server_default="false", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_escrows_amount_positive"),
    )
    op.create_index("ix_escrows_booking_id", "escrows", ["booking_id"])
    op.create_index("ix_escrows_client_id", "escrows", ["client_id"])
    op.create_index("ix_escrows_provider_id", "escrows", ["provider_id"])
    op.create_index("ix_escrows_provider_hold_id", "escrows", ["provider_hold_id"])
    op.create_index("ix_escrows_status", "escrows", ["status"])
    op.create_index("ix_escrows_status_updated_at", "escrows", ["status", "updated_at"])

    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("initiated_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("gateway_provider", sa.String(20), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(128), nullable=True),
        sa.Column("gateway_message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("previous_balance", sa.BigInteger(), nullable=True),
        sa.Column("new_balance", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("idempotency_key", sa.String(200), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("idempotency_key", name="uq_escrow_transactions_idempotency_key"),
    )
    op.create_index("ix_escrow_transactions_escrow_id", "escrow_transactions", ["escrow_id"])
    op.create_index("ix_escrow_transactions_transaction_type", "escrow_transactions", ["transaction_type"])
    op.create_index("ix_escrow_transactions_escrow_ts", "escrow_transactions", ["escrow_id", "timestamp"])

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payout_provider", sa.String(20), nullable=False),
        sa.Column("gateway_payout_id", sa.String(128), nullable=True),
        sa.Column("destination_type", sa.String(20), nullable=False),
        sa.Column("destination_details", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), server_default="PENDING", nullable=False),
        sa.Column("reference", sa.String(128), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payouts_escrow_id", "payouts", ["escrow_id"])
    op.create_index("ix_payouts_provider_id", "payouts", ["provider_id"])
    op.create_index("ix_payouts_gateway_payout_id", "payouts", ["gateway_payout_id"])
    op.create_index("ix_payouts_status", "payouts", ["status"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), server_default="processing", nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
    op.create_index("ix_webhook_events_provider", "webhook_events", ["provider"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(60), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("priority", sa.String(10), server_default="medium", nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index(
        "ix_notifications_user_type_created", "notifications", ["user_id", "type", "created_at"],
    )

    # The ledger is append-only at the database level too
    op.execute(
        """
        CREATE OR REPLACE FUNCTION escrow_transactions_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'escrow_transactions rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER escrow_transactions_no_update_delete
        BEFORE UPDATE OR DELETE ON escrow_transactions
        FOR EACH ROW EXECUTE FUNCTION escrow_transactions_immutable();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS escrow_transactions_no_update_delete ON escrow_transactions")
    op.execute("DROP FUNCTION IF EXISTS escrow_transactions_immutable()")
    op.drop_table("notifications")
    op.drop_table("webhook_events")
    op.drop_table("payouts")
    op.drop_table("escrow_transactions")
    op.drop_table("escrows")
    op.drop_table("bookings")
    op.drop_table("users")
