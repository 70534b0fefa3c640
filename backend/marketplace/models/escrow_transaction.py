from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base, utcnow


class EscrowTransaction(Base):
    """Immutable ledger entry. See services/escrow/ledger.py for the write path."""

    __tablename__ = "escrow_transactions"

    escrow_id: Mapped[int] = mapped_column(
        ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    initiated_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    gateway_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    previous_balance: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    new_balance: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)

    __table_args__ = (
        Index("ix_escrow_transactions_escrow_ts", "escrow_id", "timestamp"),
    )
