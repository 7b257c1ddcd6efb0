"""
Connected account - a Stripe Connect account owned by one organization.
Kept in sync from account.* and capability.* webhooks.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Onboarding state
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    business_type: Mapped[Optional[str]] = mapped_column(
        String(50)
    )  # individual, company, non_profit, government_entity
    country: Mapped[Optional[str]] = mapped_column(String(2))
    default_currency: Mapped[Optional[str]] = mapped_column(String(3))

    requirements: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    capabilities: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    external_accounts: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)  # keyed by external account id
    account_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    # Stripe "created" of the newest event applied to this row
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    onboarding_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deauthorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

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
        Index("ix_connected_accounts_organization_id", "organization_id"),
    )

    @property
    def onboarding_complete(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled and self.details_submitted)

    def __repr__(self) -> str:
        return f"<ConnectedAccount {self.stripe_account_id} org={self.organization_id}>"
