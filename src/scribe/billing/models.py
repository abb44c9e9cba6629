"""Billing persistence models -- credit_entries and user_accounts.

credit_entries is append-only; nothing updates or deletes a row. The
balance is always SUM(amount) for the user.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.scribe.core.database import Base


class CreditEntryModel(Base):
    """Signed credit movement for a user."""

    __tablename__ = "credit_entries"
    __table_args__ = (
        Index("ix_credit_entries_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class UserAccountModel(Base):
    """Per-user tier, provider credentials, and credit window.

    The row also serves as the lock target that serializes debits for a
    user (SELECT ... FOR UPDATE).
    """

    __tablename__ = "user_accounts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tier: Mapped[str] = mapped_column(
        String(20), default="free", server_default=text("'free'")
    )
    gemini_api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    openai_api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    groq_api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    selected_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    prefer_own_key: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    credits_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
