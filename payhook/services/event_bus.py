"""
Domain event bus - in-process pub/sub backed by the domain_events table.

Every published event is persisted first (audit, timelines, replay), then
handed to subscribers in descending priority. Handlers registered with
should_queue=True are not run inline: they become jobs on their named queue
and run in a worker (ListenerJobProcessor).

One bus is built per process and injected; there is no module-level instance.

Key events:
- onboarding.*: connected account lifecycle (emails, analytics)
- payment.* / billing.*: money movement (emails, usage metering, analytics)
- system.error_occurred / webhook.dead_lettered: operator alerts
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from payhook.errors import EventBusClosed
from payhook.models.domain_event import DomainEvent
from payhook.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"
DEFAULT_QUEUE = "events"
MAX_ERROR_LENGTH = 2000

# Returning False from a handler stops propagation to lower-priority handlers
EventHandler = Callable[[DomainEvent], Awaitable[Optional[bool]]]


class EventType:
    """Domain event type constants."""
    ONBOARDING_ACCOUNT_UPDATED = "onboarding.account_updated"
    ONBOARDING_CAPABILITIES_UPDATED = "onboarding.account_capabilities_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_ADDED = "onboarding.external_account_added"
    ONBOARDING_EXTERNAL_ACCOUNT_UPDATED = "onboarding.external_account_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_REMOVED = "onboarding.external_account_removed"
    ONBOARDING_COMPLETED = "onboarding.completed"
    ONBOARDING_DEAUTHORIZED = "onboarding.account_deauthorized"
    PLAN_SYNCED = "billing.plan_synced"
    PLAN_ARCHIVED = "billing.plan_archived"
    SUBSCRIPTION_UPDATED = "billing.subscription_updated"
    SUBSCRIPTION_CANCELED = "billing.subscription_canceled"
    INVOICE_PAID = "billing.invoice_paid"
    INVOICE_PAYMENT_FAILED = "billing.invoice_payment_failed"
    PAYOUT_PAID = "billing.payout_paid"
    PAYOUT_FAILED = "billing.payout_failed"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELED = "payment.canceled"
    SYSTEM_ERROR = "system.error_occurred"
    WEBHOOK_DEAD_LETTERED = "webhook.dead_lettered"


@dataclass(frozen=True)
class HandlerRegistration:
    event_type: str
    handler: EventHandler
    name: str
    priority: int = 0
    should_queue: bool = False
    queue: str = DEFAULT_QUEUE
    stop_propagation: bool = False
    order: int = 0


class EventBus:
    def __init__(
        self,
        session_factory,
        queue=None,
        environment: str = "development",
        source: str = "payhook",
    ):
        """
        Args:
            session_factory: async_sessionmaker for the domain_events table
            queue: JobQueue for should_queue handlers (None runs them inline)
            environment: recorded in every event's metadata
            source: recorded in every event's metadata
        """
        self._session_factory = session_factory
        self._queue = queue
        self.environment = environment
        self.source = source
        self._handlers: dict[str, list[HandlerRegistration]] = {}
        self._registered = 0
        self._pending: set[asyncio.Task] = set()
        self._closing = False
        self._closed = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        name: Optional[str] = None,
        priority: int = 0,
        should_queue: bool = False,
        queue: str = DEFAULT_QUEUE,
        stop_propagation: bool = False,
    ) -> HandlerRegistration:
        """Register a handler for one event type, or ALL_EVENTS ("*")."""
        name = name or getattr(handler, "__qualname__", repr(handler))
        registrations = self._handlers.setdefault(event_type, [])
        if any(r.name == name for r in registrations):
            raise ValueError(f"Handler {name!r} already subscribed to {event_type}")

        registration = HandlerRegistration(
            event_type=event_type,
            handler=handler,
            name=name,
            priority=priority,
            should_queue=should_queue,
            queue=queue,
            stop_propagation=stop_propagation,
            order=self._registered,
        )
        self._registered += 1
        registrations.append(registration)
        logger.debug("Handler %s subscribed to %s (priority=%d)", name, event_type, priority)
        return registration

    def unsubscribe(self, event_type: str, name: str) -> bool:
        registrations = self._handlers.get(event_type, [])
        remaining = [r for r in registrations if r.name != name]
        self._handlers[event_type] = remaining
        return len(remaining) != len(registrations)

    def handlers_for(self, event_type: str) -> list[HandlerRegistration]:
        """Specific and wildcard handlers, highest priority first, then registration order."""
        registrations = list(self._handlers.get(event_type, []))
        if event_type != ALL_EVENTS:
            registrations += self._handlers.get(ALL_EVENTS, [])
        return sorted(registrations, key=lambda r: (-r.priority, r.order))

    def get_handler(self, name: str) -> Optional[HandlerRegistration]:
        for registrations in self._handlers.values():
            for registration in registrations:
                if registration.name == name:
                    return registration
        return None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        organization_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_type: str = "system",
        idempotency_key: Optional[str] = None,
        stripe_event_id: Optional[str] = None,
        event_version: str = "1.0.0",
        metadata: Optional[dict] = None,
    ) -> DomainEvent:
        """
        Persist the event, then notify handlers.

        Publishing again with an idempotency key that is already stored returns
        the first event. In-process handlers are not run again; if the first
        dispatch never completed, queued handlers are enqueued again (their
        jobs are deduplicated per event and handler).
        """
        if self._closed:
            raise EventBusClosed(f"Cannot publish {event_type}: event bus is closed")

        if idempotency_key:
            existing = await self._get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Domain event already published: %s key=%s", event_type, idempotency_key,
                )
                if not existing.processed:
                    await self._redispatch_queued(existing)
                return existing

        now = datetime.now(timezone.utc)
        event_metadata = {
            "source": self.source,
            "timestamp": now.isoformat(),
            "environment": self.environment,
            "correlation_id": get_correlation_id(),
        }
        if stripe_event_id:
            event_metadata["stripe_event_id"] = stripe_event_id
        if metadata:
            event_metadata.update(metadata)

        event = DomainEvent(
            event_type=event_type,
            event_version=event_version,
            actor_id=actor_id,
            actor_type=actor_type,
            organization_id=organization_id,
            payload=payload,
            event_metadata=event_metadata,
            idempotency_key=idempotency_key,
            processed=False,
            retry_count=0,
            created_at=now,
        )

        async with self._session_factory() as db:
            db.add(event)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if not idempotency_key:
                    raise
                existing = await self._get_by_idempotency_key(idempotency_key)
                if existing is None:
                    raise
                return existing

        logger.info(
            "Domain event published: %s id=%s",
            event_type, str(event.id)[:8],
            extra={"event_type": event_type, "organization_id": organization_id},
        )

        await self._dispatch(event)
        return event

    def emit(self, event_type: str, payload: dict[str, Any], **kwargs) -> asyncio.Task:
        """Fire-and-forget publish. Failures are logged, never raised to the caller."""
        if self._closing or self._closed:
            raise EventBusClosed(f"Cannot emit {event_type}: event bus is closed")

        task = asyncio.create_task(self._emit(event_type, payload, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _emit(self, event_type: str, payload: dict[str, Any], **kwargs) -> Optional[DomainEvent]:
        try:
            return await self.publish(event_type, payload, **kwargs)
        except Exception as e:
            logger.error("Domain event emit failed: %s: %s", event_type, str(e))
            return None

    async def _enqueue_handler(self, event: DomainEvent, registration: HandlerRegistration) -> None:
        await self._queue.enqueue(
            registration.queue,
            {
                "event_id": str(event.id),
                "event_type": event.event_type,
                "handler": registration.name,
            },
            dedup_key=f"{event.id}-{registration.name}",
        )

    async def _redispatch_queued(self, event: DomainEvent) -> None:
        """Enqueue the queued handlers of an event whose dispatch did not finish."""
        if self._queue is None:
            return
        failed = False
        for registration in self.handlers_for(event.event_type):
            if registration.should_queue:
                try:
                    await self._enqueue_handler(event, registration)
                except Exception as e:
                    failed = True
                    logger.error(
                        "Re-enqueue of %s failed for %s id=%s: %s",
                        registration.name, event.event_type, str(event.id)[:8], str(e),
                        extra={"event_type": event.event_type},
                    )
                    await self.record_failure(event.id, registration.name, str(e))
            if registration.stop_propagation:
                break

        if not failed:
            logger.info(
                "Queued handlers re-dispatched for %s id=%s", event.event_type, str(event.id)[:8],
            )
            await self.mark_processed(event.id)

    async def _dispatch(self, event: DomainEvent) -> None:
        failed = False
        for registration in self.handlers_for(event.event_type):
            try:
                if registration.should_queue and self._queue is not None:
                    await self._enqueue_handler(event, registration)
                    result = None
                else:
                    result = await registration.handler(event)
            except Exception as e:
                failed = True
                logger.error(
                    "Event handler %s failed for %s id=%s: %s",
                    registration.name, event.event_type, str(event.id)[:8], str(e),
                    extra={"event_type": event.event_type},
                )
                await self.record_failure(event.id, registration.name, str(e))
                continue

            if registration.stop_propagation or result is False:
                logger.debug(
                    "Propagation of %s stopped by %s", event.event_type, registration.name,
                )
                break

        if not failed:
            await self.mark_processed(event.id)

    # ------------------------------------------------------------------
    # Processing state
    # ------------------------------------------------------------------

    async def mark_processed(self, event_id) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(DomainEvent)
                .where(DomainEvent.id == event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def record_failure(self, event_id, handler_name: str, error: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(DomainEvent)
                .where(DomainEvent.id == event_id)
                .values(
                    retry_count=DomainEvent.retry_count + 1,
                    last_error=f"{handler_name}: {error}"[:MAX_ERROR_LENGTH],
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, event_id) -> Optional[DomainEvent]:
        async with self._session_factory() as db:
            return await db.get(DomainEvent, event_id)

    async def _get_by_idempotency_key(self, key: str) -> Optional[DomainEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DomainEvent).where(DomainEvent.idempotency_key == key)
            )
            return result.scalar_one_or_none()

    async def list_for_organization(
        self,
        organization_id: str,
        limit: int = 50,
        offset: int = 0,
        event_type: Optional[str] = None,
    ) -> list[DomainEvent]:
        """Organization timeline, newest first."""
        conditions = [DomainEvent.organization_id == organization_id]
        if event_type:
            conditions.append(DomainEvent.event_type == event_type)
        async with self._session_factory() as db:
            result = await db.execute(
                select(DomainEvent)
                .where(and_(*conditions))
                .order_by(DomainEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_unprocessed(self, limit: int = 100) -> list[DomainEvent]:
        """Events with at least one failed handler, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(DomainEvent)
                .where(DomainEvent.processed.is_(False))
                .order_by(DomainEvent.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Wait for in-flight emits, then reject further publishes."""
        self._closing = True
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._closed = True
        logger.info("Event bus closed")
