# export_engine/donations/models.py

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from export_engine.core.db import Base


class DonationStatus(str, PyEnum):
    """Enumeration for donation payment status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Donation(Base):
    """
    Donation record owned by the donations module.

    The export engine only ever reads this table.
    """

    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    organization_id: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True,
        comment="Organization that owns the campaign"
    )
    campaign_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    campaign_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Donor
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    donor_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    donor_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Payment
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DonationStatus.PENDING.value, index=True
    )
    corporate_match_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # Flags
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_frequency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    donated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Donation(id={self.id}, campaign_id={self.campaign_id}, amount={self.amount})>"
