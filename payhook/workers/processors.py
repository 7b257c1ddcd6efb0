"""
Job processors - what a worker does with each kind of job.

WebhookJobProcessor runs stored Stripe events through the event router.
ListenerJobProcessor runs domain event listeners registered with should_queue.
"""
import logging
import uuid
from typing import Optional

from payhook.services.event_bus import EventType
from payhook.utils.logging import bind_log_context, set_correlation_id

logger = logging.getLogger(__name__)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class WebhookJobProcessor:
    def __init__(self, store, router, bus):
        self._store = store
        self._router = router
        self._bus = bus

    async def _load(self, job):
        webhook_id = _as_uuid(job.payload.get("webhook_id"))
        if webhook_id is not None:
            event = await self._store.get(webhook_id)
            if event is not None:
                return event
        stripe_event_id = job.payload.get("event_id")
        if stripe_event_id:
            return await self._store.get_by_stripe_event_id(stripe_event_id)
        return None

    async def process(self, job) -> None:
        event = await self._load(job)
        if event is None:
            logger.error(
                "Webhook event for job %s not found: %s",
                str(job.id)[:8], job.payload,
                extra={"job_id": str(job.id), "topic": job.topic},
            )
            return

        if event.correlation_id:
            set_correlation_id(event.correlation_id)
        bind_log_context(
            webhook_id=str(event.id),
            stripe_event_id=event.stripe_event_id,
            event_type=event.event_type,
        )

        if event.processed:
            logger.info("Webhook %s already processed, skipping", event.stripe_event_id)
            return

        handled = await self._router.route(event.payload)
        await self._store.mark_processed(event.id)
        logger.info(
            "Webhook processed: %s %s (attempt %d, %s)",
            event.event_type, event.stripe_event_id, job.attempts,
            "handled" if handled else "no handler",
        )

    async def on_failure(self, job, error: str, error_stack: Optional[str], outcome) -> None:
        webhook_id = _as_uuid(job.payload.get("webhook_id"))
        if webhook_id is not None:
            await self._store.record_failure(
                webhook_id,
                error,
                error_stack=error_stack,
                next_retry_at=None if outcome.dead else outcome.next_attempt_at,
            )

        if outcome.dead:
            self._bus.emit(
                EventType.WEBHOOK_DEAD_LETTERED,
                {
                    "webhook_id": str(webhook_id) if webhook_id else None,
                    "stripe_event_id": job.payload.get("event_id"),
                    "event_type": job.payload.get("event_type"),
                    "topic": job.topic,
                    "attempts": outcome.attempts,
                    "error": error[:500],
                },
                stripe_event_id=job.payload.get("event_id"),
            )


class ListenerJobProcessor:
    def __init__(self, bus):
        self._bus = bus

    async def process(self, job) -> None:
        name = job.payload.get("handler")
        event_id = _as_uuid(job.payload.get("event_id"))
        event = await self._bus.get(event_id) if event_id is not None else None
        if event is None:
            logger.error(
                "Domain event for listener job %s not found: %s",
                str(job.id)[:8], job.payload,
                extra={"job_id": str(job.id), "topic": job.topic},
            )
            return

        registration = self._bus.get_handler(name)
        if registration is None:
            logger.warning(
                "Listener %s is not registered in this process, dropping job %s",
                name, str(job.id)[:8],
                extra={"job_id": str(job.id), "topic": job.topic},
            )
            return

        correlation_id = (event.event_metadata or {}).get("correlation_id")
        if correlation_id:
            set_correlation_id(correlation_id)

        await registration.handler(event)
        logger.debug("Listener %s ran for %s id=%s", name, event.event_type, str(event.id)[:8])

    async def on_failure(self, job, error: str, error_stack: Optional[str], outcome) -> None:
        name = job.payload.get("handler")
        event_id = _as_uuid(job.payload.get("event_id"))
        if event_id is not None:
            await self._bus.record_failure(event_id, name, error)

        if outcome.dead:
            self._bus.emit(
                EventType.SYSTEM_ERROR,
                {
                    "message": f"Listener {name} gave up on {job.payload.get('event_type')}: {error[:300]}",
                    "severity": "error",
                    "context": {
                        "listener": name,
                        "event_id": str(event_id) if event_id else None,
                        "attempts": outcome.attempts,
                    },
                },
            )
