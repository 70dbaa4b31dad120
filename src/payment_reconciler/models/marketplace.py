"""Marketplace models.

Covers the escrow-backed order flow:
- Provider profiles (sellers and their gateway Connect accounts)
- Orders (escrow status lives here)
- Escrow transactions (append-only hold/release/refund entries)
- Disputes (chargebacks raised by the gateway)
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_reconciler.models.base import Base, TimestampMixin, new_id


class ProviderProfile(TimestampMixin, Base):
    """A seller on the marketplace, linked to a gateway Connect account."""

    __tablename__ = "provider_profile"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    gateway_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("provider_profile_by_gateway_account", "gateway_account_id"),
    )


class Order(TimestampMixin, Base):
    """Marketplace transaction between a buyer and a seller.

    escrow_status is only mutated by the escrow state machine (after
    payment validation) and by dispute handling.
    """

    __tablename__ = "marketplace_order"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("provider_profile.id"), nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    escrow_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint(
            """status IN (
                'pending', 'accepted', 'in_progress', 'delivered',
                'completed', 'cancelled', 'disputed'
            )""",
            name="marketplace_order_status_ck",
        ),
        CheckConstraint(
            "escrow_status IN ('pending', 'held', 'released', 'refunded')",
            name="marketplace_order_escrow_status_ck",
        ),
        CheckConstraint("total_amount > 0", name="marketplace_order_amount_ck"),
        Index("marketplace_order_by_payment_reference", "payment_reference"),
    )

    seller: Mapped[ProviderProfile] = relationship("ProviderProfile", lazy="raise")
    escrow_transactions: Mapped[list["EscrowTransaction"]] = relationship(
        "EscrowTransaction", back_populates="order", lazy="raise"
    )


class EscrowTransaction(TimestampMixin, Base):
    """Append-only escrow ledger entry.

    CRITICAL: never updated or deleted. The idempotency_key makes a second
    hold for the same (order, payment reference) impossible.
    """

    __tablename__ = "escrow_transaction"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("marketplace_order.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    __table_args__ = (
        CheckConstraint("kind IN ('hold', 'release', 'refund')", name="escrow_transaction_kind_ck"),
        CheckConstraint("amount > 0", name="escrow_transaction_amount_ck"),
        Index("escrow_transaction_by_order", "order_id", "kind"),
    )

    order: Mapped[Order] = relationship("Order", back_populates="escrow_transactions", lazy="raise")


class Dispute(TimestampMixin, Base):
    """A chargeback raised externally against an order's payment."""

    __tablename__ = "dispute"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("marketplace_order.id"), nullable=False
    )
    external_dispute_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    raised_by: Mapped[str] = mapped_column(String(64), nullable=False, default="gateway")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    outcome: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('open', 'resolved')", name="dispute_status_ck"),
    )
