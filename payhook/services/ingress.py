"""
Webhook ingress - verify, persist, enqueue, acknowledge.

Nothing here runs business logic. The only non-200 answers are for requests
Stripe must not count as delivered: a bad or missing signature (400), or a
store outage before the event was persisted (500, Stripe redelivers).
Once the event row exists, the answer is 200 even if the enqueue fails;
the reconciler picks up events that never got a job.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from payhook.errors import DuplicateEvent, InvalidSignature, MissingSignature
from payhook.services.job_queue import CONNECT_WEBHOOKS_TOPIC, STRIPE_WEBHOOKS_TOPIC
from payhook.utils.logging import get_correlation_id
from payhook.utils.webhook_signatures import compute_payload_hash

logger = logging.getLogger(__name__)

SOURCE_TOPICS = {
    "stripe": STRIPE_WEBHOOKS_TOPIC,
    "connect": CONNECT_WEBHOOKS_TOPIC,
}

# Never persisted with the audit copy of the request headers
_REDACTED_HEADERS = {"authorization", "cookie", "x-api-key"}


@dataclass
class IngressResult:
    status_code: int
    body: dict = field(default_factory=dict)
    stripe_event_id: Optional[str] = None
    webhook_id: Optional[str] = None
    duplicate: bool = False


def _audit_headers(headers: Optional[dict]) -> Optional[dict]:
    if not headers:
        return None
    return {
        k.lower(): v for k, v in headers.items()
        if k.lower() not in _REDACTED_HEADERS
    }


class WebhookIngress:
    def __init__(self, store, queue, verifiers: dict):
        """
        Args:
            store: WebhookStore
            queue: JobQueue
            verifiers: source name ("stripe", "connect") -> WebhookVerifier
        """
        self._store = store
        self._queue = queue
        self._verifiers = verifiers

    async def receive(
        self,
        raw_body: bytes,
        signature: Optional[str],
        source: str = "stripe",
        headers: Optional[dict] = None,
        url: Optional[str] = None,
    ) -> IngressResult:
        if not signature:
            logger.warning("Stripe webhook without signature header (%s endpoint)", source)
            return IngressResult(400, {"error": "Missing stripe-signature header"})

        try:
            event = self._verifiers[source].verify(raw_body, signature)
        except MissingSignature:
            return IngressResult(400, {"error": "Missing stripe-signature header"})
        except InvalidSignature:
            return IngressResult(400, {"error": "Invalid signature"})

        stripe_event_id = event["id"]
        event_type = event["type"]
        log_extra = {"stripe_event_id": stripe_event_id, "event_type": event_type}

        try:
            existing = await self._store.get_by_stripe_event_id(stripe_event_id)
        except Exception as e:
            logger.error(
                "Webhook store lookup failed for %s: %s", stripe_event_id, str(e),
                extra=log_extra,
            )
            return IngressResult(500, {"error": "Webhook store unavailable"}, stripe_event_id)

        if existing is not None:
            logger.info("Duplicate webhook ignored: %s %s", event_type, stripe_event_id, extra=log_extra)
            return self._duplicate(stripe_event_id, existing.id)

        try:
            record = await self._store.insert(
                event,
                source=source,
                payload_hash=compute_payload_hash(raw_body),
                headers=_audit_headers(headers),
                url=url,
                correlation_id=get_correlation_id(),
            )
        except DuplicateEvent:
            logger.info("Duplicate webhook (concurrent delivery): %s", stripe_event_id, extra=log_extra)
            return self._duplicate(stripe_event_id, None)
        except Exception as e:
            logger.error(
                "Webhook store insert failed for %s: %s", stripe_event_id, str(e),
                extra=log_extra,
            )
            return IngressResult(500, {"error": "Webhook store unavailable"}, stripe_event_id)

        webhook_id = str(record.id)
        try:
            await self._queue.enqueue(
                SOURCE_TOPICS[source],
                {
                    "webhook_id": webhook_id,
                    "event_id": stripe_event_id,
                    "event_type": event_type,
                },
                dedup_key=stripe_event_id,
            )
        except Exception as e:
            logger.error(
                "Enqueue failed for stored webhook %s (reconciler will requeue): %s",
                stripe_event_id, str(e),
                extra={**log_extra, "webhook_id": webhook_id},
            )

        return IngressResult(
            200, {"received": True}, stripe_event_id=stripe_event_id, webhook_id=webhook_id,
        )

    @staticmethod
    def _duplicate(stripe_event_id: str, webhook_id) -> IngressResult:
        return IngressResult(
            200,
            {"received": True, "duplicate": True},
            stripe_event_id=stripe_event_id,
            webhook_id=str(webhook_id) if webhook_id else None,
            duplicate=True,
        )
