"""
Webhook event record - every verified Stripe webhook is stored before it is queued.
The unique stripe_event_id is the idempotency boundary for at-least-once delivery.
Rows are never deleted by the pipeline; unprocessed rows with an error are the
operator's view of permanently failed events.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from payhook.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False, index=True)
    source = Column(String(20), nullable=False, default="stripe")  # stripe, connect
    livemode = Column(Boolean, nullable=False, default=False)
    stripe_account_id = Column(String(255), nullable=True, index=True)

    # Processing
    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Error history (the job queue owns scheduling, these columns only record it)
    error = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Audit
    payload = Column(JSONB, nullable=False)
    headers = Column(JSONB, nullable=True)
    url = Column(Text, nullable=True)
    payload_hash = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_events_processed_created", "processed", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.stripe_event_id} {self.event_type} processed={self.processed}>"
