"""
Tests for payhook/services/usage.py - reporting metered usage to Stripe.
"""
from unittest.mock import AsyncMock

import pytest

from payhook.models.subscription import Subscription
from payhook.models.subscription_plan import SubscriptionPlan
from payhook.services.usage import METER_PAYMENT_FEE, METER_PAYOUT_FEE, UsageMeter


@pytest.fixture
def gateway():
    gw = AsyncMock()
    gw.list_subscription_items = AsyncMock(return_value=[{"id": "si_base", "price": {"id": "price_m"}}])
    gw.create_subscription_item = AsyncMock(return_value={"id": "si_fee"})
    gw.create_meter_event = AsyncMock(return_value={"identifier": "x"})
    return gw


async def _seed(session_factory, status="active", metered=True):
    async with session_factory() as db:
        db.add(SubscriptionPlan(
            stripe_product_id="prod_1",
            name="Pro",
            monthly_price_id="price_m",
            metered_items=[{
                "price_id": "price_fee", "meter_name": "Payment fee",
                "meter_type": METER_PAYMENT_FEE, "event_name": "payment_fee",
            }] if metered else [],
            price_versions={},
        ))
        db.add(Subscription(
            stripe_subscription_id="sub_1",
            stripe_customer_id="cus_1",
            organization_id="org-1",
            status=status,
            price_id="price_m",
        ))
        await db.commit()


class TestReport:
    async def test_reports_meter_event(self, session_factory, gateway):
        await _seed(session_factory)
        meter = UsageMeter(session_factory, gateway)

        identifier = await meter.report("org-1", METER_PAYMENT_FEE, "pi_1", timestamp=1704067200)

        assert identifier == f"pi_1:{METER_PAYMENT_FEE}"
        gateway.create_subscription_item.assert_awaited_once_with(
            "sub_1", "price_fee", metadata={"source": "payhook"},
        )
        gateway.create_meter_event.assert_awaited_once_with(
            event_name="payment_fee",
            stripe_customer_id="cus_1",
            value=1,
            identifier=identifier,
            timestamp=1704067200,
        )

    async def test_existing_metered_item_reused(self, session_factory, gateway):
        await _seed(session_factory)
        gateway.list_subscription_items = AsyncMock(return_value=[{"id": "si_fee", "price": {"id": "price_fee"}}])

        await UsageMeter(session_factory, gateway).report("org-1", METER_PAYMENT_FEE, "pi_1")
        gateway.create_subscription_item.assert_not_awaited()

    async def test_unmetered_type_skipped(self, session_factory, gateway):
        await _seed(session_factory)
        assert await UsageMeter(session_factory, gateway).report("org-1", METER_PAYOUT_FEE, "po_1") is None
        gateway.create_meter_event.assert_not_awaited()

    async def test_canceled_subscription_not_billed(self, session_factory, gateway):
        await _seed(session_factory, status="canceled")
        assert await UsageMeter(session_factory, gateway).report("org-1", METER_PAYMENT_FEE, "pi_1") is None

    async def test_unknown_organization(self, session_factory, gateway):
        assert await UsageMeter(session_factory, gateway).report("org-404", METER_PAYMENT_FEE, "pi_1") is None
        gateway.list_subscription_items.assert_not_awaited()
