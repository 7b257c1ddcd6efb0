"""
Job model - durable per-topic work queue.
A job is leased to one worker at a time; ack deletes the row, nack either
reschedules it with backoff or moves it to the dead state.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payhook.database import Base


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    topic: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # stripe-webhooks, connect-webhooks, emails, analytics, usage

    # Webhook jobs reference the stored event only: webhook_id, event_id, event_type
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)

    dedup_key: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, leased, dead

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=4, nullable=False)

    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    # Lease
    lease_token: Mapped[Optional[str]] = mapped_column(String(64))
    leased_by: Mapped[Optional[str]] = mapped_column(String(100))
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    last_error: Mapped[Optional[str]] = mapped_column(Text)
    dead_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("topic", "dedup_key", name="uq_jobs_topic_dedup_key"),
        Index("ix_jobs_claim", "topic", "status", "available_at"),
        Index("ix_jobs_lease_expires_at", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.topic} ({self.status}) attempts={self.attempts}/{self.max_attempts}>"
