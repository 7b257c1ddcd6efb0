"""
Payment intent - a payment collected on behalf of an organization, usually
through its connected account.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_received: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(
        String(40), nullable=False
    )  # requires_payment_method, processing, succeeded, canceled, ...
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255))
    receipt_url: Mapped[Optional[str]] = mapped_column(Text)
    failure_code: Mapped[Optional[str]] = mapped_column(String(100))
    failure_message: Mapped[Optional[str]] = mapped_column(Text)
    intent_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    succeeded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_payment_intents_organization_id", "organization_id"),
        Index("ix_payment_intents_stripe_account_id", "stripe_account_id"),
    )

    def __repr__(self) -> str:
        return f"<PaymentIntent {self.stripe_payment_intent_id} {self.amount} {self.currency} ({self.status})>"
