"""
Analytics listener - forwards every domain event to the analytics collector.
"""
import logging

import httpx

from payhook.handlers.common import as_utc
from payhook.models.domain_event import DomainEvent

logger = logging.getLogger(__name__)


class AnalyticsListener:
    def __init__(self, endpoint_url: str = "", api_key: str = "", timeout: float = 10.0):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.timeout = timeout

    async def track(self, event: DomainEvent) -> None:
        if not self.endpoint_url:
            logger.debug("Analytics endpoint not configured, dropping %s", event.event_type)
            return

        created_at = as_utc(event.created_at)
        body = {
            "event_id": str(event.id),
            "event_type": event.event_type,
            "event_version": event.event_version,
            "organization_id": event.organization_id,
            "actor_id": event.actor_id,
            "actor_type": event.actor_type,
            "timestamp": created_at.isoformat() if created_at else None,
            "properties": event.payload or {},
        }
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.endpoint_url, json=body, headers=headers)
            response.raise_for_status()

        logger.debug("Analytics event sent: %s id=%s", event.event_type, str(event.id)[:8])
