from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base


class Escrow(Base):
    __tablename__ = "escrows"

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    client_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Minor units (cents / centavos)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    hold_provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_hold_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    provider_capture_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(
        String(30), default="CREATED", server_default="CREATED", nullable=False, index=True
    )

    # Proof of work (provider)
    proof_documents: Mapped[list[Any]] = mapped_column(default=list, nullable=False)
    proof_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    proof_uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Client approval (set by capture)
    client_approved: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    client_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Dispute
    dispute_raised: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    dispute_raised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_raised_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_evidence: Mapped[list[Any]] = mapped_column(default=list, nullable=False)
    dispute_previous_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolution_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_decided_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolution_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Automation flags
    flagged_as_stuck: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    stuck_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_refund_attempted: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        Index("ix_escrows_status_updated_at", "status", "updated_at"),
    )
