"""
Usage metering listener - bills processed payments and payouts to the
organization's metered plan items.
"""
import logging

from payhook.handlers.common import as_utc
from payhook.models.domain_event import DomainEvent
from payhook.services.usage import METER_PAYMENT_FEE, METER_PAYOUT_FEE

logger = logging.getLogger(__name__)


class UsageListener:
    def __init__(self, meter):
        self._meter = meter

    async def _report(self, event: DomainEvent, meter_type: str, source_id: str) -> None:
        if not event.organization_id:
            logger.info("No organization for %s %s, usage not metered", event.event_type, source_id)
            return
        created_at = as_utc(event.created_at)
        await self._meter.report(
            event.organization_id,
            meter_type,
            source_id,
            timestamp=int(created_at.timestamp()) if created_at else None,
        )

    async def on_payment_received(self, event: DomainEvent) -> None:
        await self._report(event, METER_PAYMENT_FEE, (event.payload or {})["payment_intent_id"])

    async def on_payout_paid(self, event: DomainEvent) -> None:
        await self._report(event, METER_PAYOUT_FEE, (event.payload or {})["payout_id"])
