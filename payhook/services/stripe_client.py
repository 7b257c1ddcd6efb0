"""
Stripe API gateway - the few outbound calls the pipeline makes.

All Stripe calls are synchronous and run via run_in_executor to avoid blocking
the asyncio event loop.
"""
import asyncio
import logging
from typing import Optional

from payhook.config import get_settings
from payhook.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _get_stripe():
    """Get configured Stripe module. Raises if not configured."""
    import stripe
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ConfigurationError("Stripe secret key not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 1
    return stripe


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


class StripeGateway:
    async def list_prices(self, product_id: str) -> list:
        """Active prices for a product, used to sync plan prices on product events."""
        stripe = _get_stripe()
        prices = await _run_sync(stripe.Price.list, product=product_id, active=True, limit=100)
        return list(prices.data)

    async def list_subscription_items(self, subscription_id: str) -> list:
        stripe = _get_stripe()
        items = await _run_sync(stripe.SubscriptionItem.list, subscription=subscription_id, limit=100)
        return list(items.data)

    async def create_subscription_item(
        self,
        subscription_id: str,
        price_id: str,
        metadata: Optional[dict] = None,
    ):
        stripe = _get_stripe()
        item = await _run_sync(
            stripe.SubscriptionItem.create,
            subscription=subscription_id,
            price=price_id,
            metadata=metadata or {},
        )
        logger.info(
            "Stripe subscription item created: %s on %s (price %s)",
            item["id"], subscription_id, price_id,
        )
        return item

    async def create_meter_event(
        self,
        event_name: str,
        stripe_customer_id: str,
        value: int,
        identifier: str,
        timestamp: Optional[int] = None,
    ):
        """
        Report usage to a billing meter. Stripe dedups on identifier, so
        reporting the same usage twice is harmless.
        """
        stripe = _get_stripe()
        params = {
            "event_name": event_name,
            "payload": {"stripe_customer_id": stripe_customer_id, "value": str(value)},
            "identifier": identifier,
        }
        if timestamp:
            params["timestamp"] = timestamp
        return await _run_sync(stripe.billing.MeterEvent.create, **params)
