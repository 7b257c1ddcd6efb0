"""
Domain event audit store - every published internal event is persisted,
whether or not any handler is subscribed. Enables audit, timelines and replay.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Boolean, String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class DomainEvent(Base):
    __tablename__ = "domain_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    event_type: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # onboarding.account_updated, payment.received, billing.payout_paid, ...
    event_version: Mapped[str] = mapped_column(String(20), default="1.0.0", nullable=False)

    # Who did it, and where
    actor_id: Mapped[Optional[str]] = mapped_column(String(255))
    actor_type: Mapped[Optional[str]] = mapped_column(
        String(20)
    )  # user, system, webhook, cron, api
    organization_id: Mapped[Optional[str]] = mapped_column(String(255))

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False)

    # Unique when set: the same fact published twice is stored once
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True)

    # Handler processing
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_domain_events_event_type", "event_type"),
        Index("ix_domain_events_organization_id", "organization_id"),
        Index("ix_domain_events_actor_id", "actor_id"),
        Index("ix_domain_events_processed", "processed", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<DomainEvent {self.event_type} processed={self.processed}>"
