"""
Payout - funds moved from a connected account's balance to its bank account.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_payout_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # pending, in_transit, paid, failed, canceled
    arrival_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failure_code: Mapped[Optional[str]] = mapped_column(String(100))
    failure_message: Mapped[Optional[str]] = mapped_column(Text)

    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_payouts_stripe_account_id", "stripe_account_id"),
    )

    def __repr__(self) -> str:
        return f"<Payout {self.stripe_payout_id} {self.amount} {self.currency} ({self.status})>"
