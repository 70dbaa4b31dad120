"""Retainer models: standing arrangements billed through timesheet entries."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payment_reconciler.models.base import Base, TimestampMixin, new_id


class Retainer(TimestampMixin, Base):
    """A standing service arrangement between a buyer and a seller."""

    __tablename__ = "retainer"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("provider_profile.id"), nullable=False
    )
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'paused', 'cancelled')",
            name="retainer_status_ck",
        ),
    )


class TimesheetEntry(Base):
    """A unit of billable retainer work awaiting payment.

    status moves to 'paid' exactly once, gated by a payment reference match.
    """

    __tablename__ = "timesheet_entry"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    retainer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("retainer.id"), nullable=False
    )
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    hours_logged: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'disputed', 'paid')",
            name="timesheet_entry_status_ck",
        ),
        UniqueConstraint("retainer_id", "week_start", name="timesheet_entry_week_uq"),
        Index("timesheet_entry_by_payment_reference", "payment_reference"),
    )
