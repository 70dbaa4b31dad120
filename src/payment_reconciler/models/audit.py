"""Audit-only records of funds movement and account balances.

Transfer and payout logs are keyed by the gateway's id and written with
upsert semantics. Balance transactions are append-only and unique per
payment reference.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payment_reconciler.models.base import Base, TimestampMixin, new_id, utcnow


class TransferLogEntry(TimestampMixin, Base):
    """A fund transfer to a seller's connected account."""

    __tablename__ = "transfer_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    external_transfer_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    milestone_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    destination_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    __table_args__ = (Index("transfer_log_by_order", "order_id"),)


class PayoutLogEntry(TimestampMixin, Base):
    """A payout from a connected account to the seller's bank."""

    __tablename__ = "payout_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    external_payout_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    gateway_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    arrival_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("status IN ('paid', 'failed')", name="payout_log_status_ck"),
    )


class AccountBalance(Base):
    """Per-user spendable balance in minor currency units."""

    __tablename__ = "account_balance"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    last_topped_up_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class BalanceTransaction(TimestampMixin, Base):
    """Append-only audit trail of balance adjustments."""

    __tablename__ = "balance_transaction"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('top_up', 'spend', 'refund', 'adjustment', 'withdrawal')",
            name="balance_transaction_type_ck",
        ),
        Index("balance_transaction_by_user", "user_id"),
    )
