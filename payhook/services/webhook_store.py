"""
Webhook store - durable record of every verified Stripe delivery.

The unique stripe_event_id makes insert the idempotency check: a concurrent
duplicate surfaces as a unique violation and is reported as DuplicateEvent.
All mutations are conditional on processed = false so a late retry can never
un-process an event.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError

from payhook.errors import DuplicateEvent
from payhook.models.job import Job
from payhook.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
MAX_STACK_LENGTH = 8000


class WebhookStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get(self, webhook_id) -> Optional[WebhookEvent]:
        if isinstance(webhook_id, str):
            try:
                webhook_id = uuid.UUID(webhook_id)
            except ValueError:
                return None
        async with self._session_factory() as db:
            return await db.get(WebhookEvent, webhook_id)

    async def get_by_stripe_event_id(self, stripe_event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
            )
            return result.scalar_one_or_none()

    async def insert(
        self,
        event: dict,
        source: str = "stripe",
        payload_hash: Optional[str] = None,
        headers: Optional[dict] = None,
        url: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Persist a verified event as unprocessed.

        Raises:
            DuplicateEvent: a row with this Stripe event id already exists
        """
        record = WebhookEvent(
            stripe_event_id=event["id"],
            event_type=event["type"],
            source=source,
            livemode=bool(event.get("livemode", False)),
            stripe_account_id=event.get("account"),
            processed=False,
            retry_count=0,
            payload=event,
            headers=headers,
            url=url,
            payload_hash=payload_hash,
            correlation_id=correlation_id,
            created_at=datetime.now(timezone.utc),
        )

        async with self._session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateEvent(event["id"]) from e

        logger.info(
            "Webhook stored: %s %s id=%s",
            event["type"], event["id"], str(record.id)[:8],
            extra={"webhook_id": str(record.id), "stripe_event_id": event["id"]},
        )
        return record

    async def mark_processed(self, webhook_id) -> bool:
        """Returns False if the event was already processed."""
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(and_(WebhookEvent.id == webhook_id, WebhookEvent.processed.is_(False)))
                .values(
                    processed=True,
                    processed_at=now,
                    error=None,
                    error_stack=None,
                    next_retry_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def record_failure(
        self,
        webhook_id,
        error: str,
        error_stack: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record a failed attempt. The queue has already decided when (or whether)
        the next attempt runs; next_retry_at is None once the job is dead.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(and_(WebhookEvent.id == webhook_id, WebhookEvent.processed.is_(False)))
                .values(
                    retry_count=WebhookEvent.retry_count + 1,
                    error=error[:MAX_ERROR_LENGTH],
                    error_stack=(error_stack or "")[-MAX_STACK_LENGTH:] or None,
                    next_retry_at=next_retry_at,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def list_failed(self, limit: int = 50, offset: int = 0) -> list[WebhookEvent]:
        """Unprocessed events with a recorded error, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent)
                .where(
                    and_(
                        WebhookEvent.processed.is_(False),
                        WebhookEvent.error.isnot(None),
                    )
                )
                .order_by(WebhookEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_orphans(self, created_before: datetime, limit: int = 100) -> list[WebhookEvent]:
        """Unprocessed events that never got a job (enqueue failed after insert)."""
        has_job = exists().where(Job.dedup_key == WebhookEvent.stripe_event_id)
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent)
                .where(
                    and_(
                        WebhookEvent.processed.is_(False),
                        WebhookEvent.created_at <= created_before,
                        ~has_job,
                    )
                )
                .order_by(WebhookEvent.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())
