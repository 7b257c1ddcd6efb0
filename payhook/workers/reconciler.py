"""
Reconciler - re-enqueues stored webhooks that never got a job.

Ingress answers 200 once the event row exists, even if the enqueue after it
failed. This sweep finds those rows (unprocessed, older than the grace period,
no job of any status) and enqueues them. Dead jobs still exist, so
dead-lettered events are left for an operator retry.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from payhook.services.ingress import SOURCE_TOPICS
from payhook.services.job_queue import STRIPE_WEBHOOKS_TOPIC

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class Reconciler:
    def __init__(self, store, queue, interval_seconds: int = 300, grace_seconds: int = 600):
        self._store = store
        self._queue = queue
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds

    async def run_once(self) -> int:
        """Enqueue one batch of orphaned webhooks. Returns how many were enqueued."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.grace_seconds)
        orphans = await self._store.list_orphans(cutoff, limit=BATCH_SIZE)

        enqueued = 0
        for event in orphans:
            try:
                await self._queue.enqueue(
                    SOURCE_TOPICS.get(event.source, STRIPE_WEBHOOKS_TOPIC),
                    {
                        "webhook_id": str(event.id),
                        "event_id": event.stripe_event_id,
                        "event_type": event.event_type,
                    },
                    dedup_key=event.stripe_event_id,
                )
                enqueued += 1
            except Exception as e:
                logger.error(
                    "Reconciler enqueue failed for %s: %s", event.stripe_event_id, str(e),
                    extra={"webhook_id": str(event.id), "stripe_event_id": event.stripe_event_id},
                )

        if enqueued:
            logger.warning("Reconciler re-enqueued %d orphaned webhooks", enqueued)
        return enqueued

    async def run(self) -> None:
        """Main loop - sweep, then sleep for the interval."""
        logger.info(
            "Reconciler started (interval=%ds, grace=%ds)",
            self.interval_seconds, self.grace_seconds,
        )
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Reconciler cycle error: %s", str(e))
            await asyncio.sleep(self.interval_seconds)
