"""
Operator endpoints - inspect failed webhooks, retry them, and watch queue depth.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from payhook.api.dependencies import get_container, get_current_session
from payhook.container import Container
from payhook.models.webhook_event import WebhookEvent
from payhook.schemas.api_responses import (
    QueueStats,
    QueueStatsResponse,
    RetryResponse,
    WebhookEventDetail,
    WebhookEventListResponse,
    WebhookEventSummary,
)
from payhook.services.identity import IdentitySession
from payhook.services.ingress import SOURCE_TOPICS
from payhook.services.job_queue import LISTENER_TOPICS, STRIPE_WEBHOOKS_TOPIC, WEBHOOK_TOPICS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["admin"])


def _summary_fields(event: WebhookEvent) -> dict:
    return {
        "id": str(event.id),
        "stripe_event_id": event.stripe_event_id,
        "event_type": event.event_type,
        "source": event.source,
        "livemode": bool(event.livemode),
        "stripe_account_id": event.stripe_account_id,
        "processed": event.processed,
        "processed_at": event.processed_at,
        "error": event.error,
        "retry_count": event.retry_count or 0,
        "next_retry_at": event.next_retry_at,
        "created_at": event.created_at,
    }


def _topic_for(event: WebhookEvent) -> str:
    return SOURCE_TOPICS.get(event.source, STRIPE_WEBHOOKS_TOPIC)


async def _get_event_or_404(container: Container, webhook_id: str) -> WebhookEvent:
    event = await container.store.get(webhook_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return event


@router.get("/failed", response_model=WebhookEventListResponse)
async def list_failed_webhooks(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: IdentitySession = Depends(get_current_session),
    container: Container = Depends(get_container),
):
    """Unprocessed webhooks with a recorded error, newest first."""
    events = await container.store.list_failed(limit=limit, offset=offset)
    return WebhookEventListResponse(
        events=[WebhookEventSummary(**_summary_fields(e)) for e in events],
        limit=limit,
        offset=offset,
    )


@router.get("/queues", response_model=QueueStatsResponse)
async def queue_stats(
    session: IdentitySession = Depends(get_current_session),
    container: Container = Depends(get_container),
):
    queues = []
    for topic in (*WEBHOOK_TOPICS, *LISTENER_TOPICS):
        queues.append(QueueStats(**await container.queue.stats(topic)))
    return QueueStatsResponse(queues=queues)


@router.get("/{webhook_id}", response_model=WebhookEventDetail)
async def get_webhook(
    webhook_id: str,
    session: IdentitySession = Depends(get_current_session),
    container: Container = Depends(get_container),
):
    event = await _get_event_or_404(container, webhook_id)
    job = await container.queue.get_by_dedup_key(_topic_for(event), event.stripe_event_id)
    return WebhookEventDetail(
        **_summary_fields(event),
        error_stack=event.error_stack,
        payload=event.payload or {},
        job_status=job.status if job else None,
        job_attempts=job.attempts if job else None,
    )


@router.post("/{webhook_id}/retry", response_model=RetryResponse)
async def retry_webhook(
    webhook_id: str,
    session: IdentitySession = Depends(get_current_session),
    container: Container = Depends(get_container),
):
    """
    Re-run a webhook that has not been processed. A dead job gets a fresh
    attempt budget; an event with no job at all is enqueued again.
    """
    event = await _get_event_or_404(container, webhook_id)
    if event.processed:
        raise HTTPException(status_code=409, detail="Webhook event already processed")

    topic = _topic_for(event)
    job = await container.queue.get_by_dedup_key(topic, event.stripe_event_id)
    if job is not None and job.status != "dead":
        status = "already_queued"
    elif job is not None:
        if not await container.queue.retry_dead(topic, event.stripe_event_id):
            # Another operator got there first
            status = "already_queued"
        else:
            status = "requeued"
    else:
        await container.queue.enqueue(
            topic,
            {
                "webhook_id": str(event.id),
                "event_id": event.stripe_event_id,
                "event_type": event.event_type,
            },
            dedup_key=event.stripe_event_id,
        )
        status = "requeued"

    logger.info(
        "Webhook retry requested by %s: %s -> %s",
        session.user_id[:8], event.stripe_event_id, status,
        extra={"webhook_id": str(event.id), "stripe_event_id": event.stripe_event_id},
    )
    return RetryResponse(id=str(event.id), stripe_event_id=event.stripe_event_id, status=status)
