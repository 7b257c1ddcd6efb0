"""
Shared plumbing for Stripe event handlers.

Handlers are idempotent upserts keyed by Stripe resource id. Stripe does not
guarantee delivery order, so each row remembers the "created" timestamp of the
newest event applied to it and older events are skipped.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass
class HandlerContext:
    session_factory: Any
    bus: Any  # EventBus
    gateway: Any = None  # StripeGateway

    async def publish(
        self,
        event: dict,
        domain_type: str,
        payload: dict,
        organization_id: Optional[str] = None,
    ):
        """Publish a domain event caused by a Stripe event (once per Stripe event)."""
        return await self.bus.publish(
            domain_type,
            payload,
            organization_id=organization_id,
            actor_id=event.get("account") or "stripe",
            actor_type="webhook",
            idempotency_key=f"{event['id']}:{domain_type}",
            stripe_event_id=event["id"],
        )


def event_object(event: dict) -> dict:
    return event["data"]["object"]


def as_utc(dt: Any) -> Optional[datetime]:
    if not isinstance(dt, datetime):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_timestamp(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def event_time(event: dict) -> datetime:
    """When Stripe created the event (falls back to now for hand-built events)."""
    return from_timestamp(event.get("created")) or datetime.now(timezone.utc)


def is_stale(last_event_at: Any, event_at: datetime) -> bool:
    """True if a newer event has already been applied to the row."""
    last = as_utc(last_event_at)
    return last is not None and event_at < last


def organization_from_metadata(obj: dict) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return (
        metadata.get("organization_id")
        or metadata.get("organizationId")
        or metadata.get("referenceId")
    )
