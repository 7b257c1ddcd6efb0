"""
Operator alerts for pipeline failures. Runs inline at top priority and stops
propagation, so system events never reach customer-facing listeners.
"""
import logging

from payhook.models.domain_event import DomainEvent
from payhook.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)


async def on_system_error(event: DomainEvent) -> None:
    payload = event.payload or {}
    await send_alert(
        AlertType.SYSTEM_ERROR,
        payload.get("message") or "Unspecified system error",
        correlation_id=(event.event_metadata or {}).get("correlation_id"),
        severity=payload.get("severity", "error"),
        extra=payload.get("context"),
    )


async def on_webhook_dead_lettered(event: DomainEvent) -> None:
    payload = event.payload or {}
    stripe_event_id = payload.get("stripe_event_id", "unknown")
    await send_alert(
        AlertType.WEBHOOK_DEAD_LETTERED,
        f"Webhook {stripe_event_id} ({payload.get('event_type')}) failed "
        f"{payload.get('attempts')} times and was dead-lettered: {payload.get('error')}",
        correlation_id=(event.event_metadata or {}).get("correlation_id"),
        severity="critical",
        extra={"webhook_id": payload.get("webhook_id"), "topic": payload.get("topic")},
        # One alert per lost event, not one per minute
        cooldown_key=f"{AlertType.WEBHOOK_DEAD_LETTERED}:{stripe_event_id}",
    )
