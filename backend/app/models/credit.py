"""Credit account and transaction log models."""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class TransactionType(str, enum.Enum):
    EARNED = "earned"
    SPENT = "spent"
    PURCHASED = "purchased"
    BONUS = "bonus"


class CreditAccount(Base):
    """Per-user balance. remaining_credits == total_credits - used_credits."""

    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("remaining_credits >= 0", name="ck_credit_remaining_non_negative"),
        CheckConstraint(
            "remaining_credits = total_credits - used_credits",
            name="ck_credit_balance_consistent",
        ),
    )


class CreditTransaction(Base):
    """Append-only ledger entry."""

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    clip_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_credit_tx_user_created", "user_id", "created_at"),
    )
