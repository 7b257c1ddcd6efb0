"""
Usage metering - reports per-organization usage (processed payments, payouts)
to Stripe billing meters for plans that carry metered items.
"""
import logging
from typing import Optional

from sqlalchemy import or_, select

from payhook.models.subscription import Subscription
from payhook.models.subscription_plan import SubscriptionPlan

logger = logging.getLogger(__name__)

METER_PAYMENT_FEE = "metered_custom_payment_fee"
METER_PAYOUT_FEE = "metered_payout_fee"

BILLABLE_SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due")


class UsageMeter:
    def __init__(self, session_factory, gateway):
        self._session_factory = session_factory
        self._gateway = gateway

    async def _billable_subscription(self, organization_id: str):
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscription)
                .where(
                    Subscription.organization_id == organization_id,
                    Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES),
                )
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            subscription = result.scalar_one_or_none()
            if subscription is None or not subscription.price_id:
                return None, None

            result = await db.execute(
                select(SubscriptionPlan).where(
                    or_(
                        SubscriptionPlan.monthly_price_id == subscription.price_id,
                        SubscriptionPlan.yearly_price_id == subscription.price_id,
                    )
                )
            )
            return subscription, result.scalar_one_or_none()

    async def ensure_metered_item(self, stripe_subscription_id: str, price_id: str) -> str:
        """Return the subscription item for a metered price, creating it if missing."""
        items = await self._gateway.list_subscription_items(stripe_subscription_id)
        for item in items:
            if item["price"]["id"] == price_id:
                return item["id"]

        item = await self._gateway.create_subscription_item(
            stripe_subscription_id, price_id, metadata={"source": "payhook"},
        )
        return item["id"]

    async def report(
        self,
        organization_id: str,
        meter_type: str,
        source_id: str,
        quantity: int = 1,
        timestamp: Optional[int] = None,
    ) -> Optional[str]:
        """
        Report usage for an organization. Returns the meter event identifier,
        or None when the organization's plan does not meter this usage.
        """
        subscription, plan = await self._billable_subscription(organization_id)
        if subscription is None or plan is None:
            logger.info(
                "No billable subscription for org %s, skipping %s usage",
                organization_id[:8], meter_type,
            )
            return None

        metered = next(
            (m for m in (plan.metered_items or []) if m.get("meter_type") == meter_type),
            None,
        )
        if metered is None:
            logger.debug("Plan %s does not meter %s", plan.name, meter_type)
            return None
        if not subscription.stripe_customer_id:
            logger.warning(
                "Subscription %s has no customer id, cannot report usage",
                subscription.stripe_subscription_id,
            )
            return None

        await self.ensure_metered_item(subscription.stripe_subscription_id, metered["price_id"])

        identifier = f"{source_id}:{meter_type}"
        await self._gateway.create_meter_event(
            event_name=metered.get("event_name") or meter_type,
            stripe_customer_id=subscription.stripe_customer_id,
            value=quantity,
            identifier=identifier,
            timestamp=timestamp,
        )
        logger.info(
            "Usage reported: org=%s meter=%s qty=%d id=%s",
            organization_id[:8], meter_type, quantity, identifier,
            extra={"organization_id": organization_id},
        )
        return identifier
