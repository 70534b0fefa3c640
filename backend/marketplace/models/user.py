from typing import Any

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base


class User(Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), default="client", server_default="client", index=True
    )  # client / provider / admin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    # [{"type": "bank_account", "provider": "xendit", "details": {...}}, ...]; first = primary
    payout_methods: Mapped[list[Any]] = mapped_column(default=list, nullable=False)
