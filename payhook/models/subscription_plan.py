"""
Subscription plan - a Stripe product with its monthly/yearly prices and metered items.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    stripe_product_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Flat prices (amounts in the smallest currency unit)
    monthly_price_id: Mapped[Optional[str]] = mapped_column(String(255))
    monthly_amount: Mapped[Optional[int]] = mapped_column(Integer)
    yearly_price_id: Mapped[Optional[str]] = mapped_column(String(255))
    yearly_amount: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[Optional[str]] = mapped_column(String(3))

    # [{"price_id": ..., "meter_name": ..., "meter_type": ..., "unit_amount": ...}]
    metered_items: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    features: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    limits: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    # Stripe "created" of the newest product event, and of the newest event per price id
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    price_versions: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan {self.name} ({self.stripe_product_id})>"
