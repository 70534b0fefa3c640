from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base


class Payout(Base):
    __tablename__ = "payouts"

    escrow_id: Mapped[int] = mapped_column(
        ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payout_provider: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_payout_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    destination_type: Mapped[str] = mapped_column(String(20), nullable=False)  # bank_account / wallet / crypto
    destination_details: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", server_default="PENDING", nullable=False, index=True
    )
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
