"""
Tests for payhook/handlers/payments.py - payment intents, charges and payouts.
"""
from sqlalchemy import select

from payhook.handlers.payments import (
    handle_charge_succeeded,
    handle_payment_intent_canceled,
    handle_payment_intent_failed,
    handle_payment_intent_succeeded,
    handle_payout_failed,
    handle_payout_paid,
)
from payhook.models.connected_account import ConnectedAccount
from payhook.models.payment_intent import PaymentIntent
from payhook.models.payout import Payout
from payhook.services.event_bus import EventType

T0 = 1_700_000_000


def _intent(status="succeeded", **extra):
    intent = {
        "id": "pi_1",
        "object": "payment_intent",
        "amount": 5000,
        "amount_received": 5000 if status == "succeeded" else 0,
        "currency": "usd",
        "status": status,
        "receipt_email": "payer@example.com",
        "metadata": {},
    }
    intent.update(extra)
    return intent


async def _seed_account(session_factory, organization_id="org-1"):
    async with session_factory() as db:
        db.add(ConnectedAccount(stripe_account_id="acct_1", organization_id=organization_id))
        await db.commit()


async def _intent_row(session_factory) -> PaymentIntent:
    async with session_factory() as db:
        result = await db.execute(select(PaymentIntent).where(PaymentIntent.stripe_payment_intent_id == "pi_1"))
        return result.scalar_one_or_none()


class TestPaymentIntents:
    async def test_succeeded_resolves_organization_from_account(self, ctx, session_factory, make_event, published):
        await _seed_account(session_factory)
        await handle_payment_intent_succeeded(
            ctx, make_event("payment_intent.succeeded", _intent(), account="acct_1", created=T0),
        )

        row = await _intent_row(session_factory)
        assert row.status == "succeeded"
        assert row.organization_id == "org-1"
        assert row.amount_received == 5000
        assert row.succeeded_at is not None

        events = await published(EventType.PAYMENT_RECEIVED)
        assert len(events) == 1
        assert events[0].organization_id == "org-1"
        assert events[0].payload["customer_email"] == "payer@example.com"

    async def test_metadata_organization_wins(self, ctx, session_factory, make_event):
        await _seed_account(session_factory)
        intent = _intent(metadata={"organization_id": "org-meta"})
        await handle_payment_intent_succeeded(ctx, make_event("payment_intent.succeeded", intent, account="acct_1"))
        assert (await _intent_row(session_factory)).organization_id == "org-meta"

    async def test_destination_charge_account(self, ctx, session_factory, make_event):
        await _seed_account(session_factory)
        intent = _intent(transfer_data={"destination": "acct_1"})
        await handle_payment_intent_succeeded(ctx, make_event("payment_intent.succeeded", intent))

        row = await _intent_row(session_factory)
        assert row.stripe_account_id == "acct_1"
        assert row.organization_id == "org-1"

    async def test_failed_records_decline(self, ctx, session_factory, make_event, published):
        intent = _intent(
            status="requires_payment_method",
            last_payment_error={"code": "card_declined", "decline_code": "insufficient_funds", "message": "Declined"},
        )
        await handle_payment_intent_failed(ctx, make_event("payment_intent.payment_failed", intent))

        row = await _intent_row(session_factory)
        assert row.failure_code == "insufficient_funds"
        assert row.failure_message == "Declined"
        events = await published(EventType.PAYMENT_FAILED)
        assert events[0].payload["failure_message"] == "Declined"

    async def test_late_failure_after_success_skipped(self, ctx, session_factory, make_event, published):
        await handle_payment_intent_succeeded(ctx, make_event("payment_intent.succeeded", _intent(), created=T0 + 10))
        failed = _intent(status="requires_payment_method", last_payment_error={"code": "card_declined"})
        await handle_payment_intent_failed(ctx, make_event("payment_intent.payment_failed", failed, created=T0))

        assert (await _intent_row(session_factory)).status == "succeeded"
        assert await published(EventType.PAYMENT_FAILED) == []

    async def test_canceled(self, ctx, session_factory, make_event, published):
        intent = _intent(status="canceled", cancellation_reason="abandoned", canceled_at=T0)
        await handle_payment_intent_canceled(ctx, make_event("payment_intent.canceled", intent))

        row = await _intent_row(session_factory)
        assert row.status == "canceled"
        assert row.canceled_at is not None
        events = await published(EventType.PAYMENT_CANCELED)
        assert events[0].payload["cancellation_reason"] == "abandoned"

    async def test_charge_attaches_receipt(self, ctx, session_factory, make_event):
        await handle_payment_intent_succeeded(ctx, make_event("payment_intent.succeeded", _intent()))
        charge = {"id": "ch_1", "object": "charge", "payment_intent": "pi_1", "receipt_url": "https://pay.stripe.com/r/1"}
        await handle_charge_succeeded(ctx, make_event("charge.succeeded", charge))

        row = await _intent_row(session_factory)
        assert row.stripe_charge_id == "ch_1"
        assert row.receipt_url == "https://pay.stripe.com/r/1"
        assert row.status == "succeeded"

    async def test_charge_before_intent_creates_placeholder(self, ctx, session_factory, make_event):
        charge = {"id": "ch_1", "payment_intent": "pi_1", "amount": 700, "currency": "eur",
                  "billing_details": {"email": "b@example.com"}}
        await handle_charge_succeeded(ctx, make_event("charge.succeeded", charge))

        row = await _intent_row(session_factory)
        assert row.status == "processing"
        assert row.amount == 700
        assert row.customer_email == "b@example.com"


class TestPayouts:
    async def test_paid(self, ctx, session_factory, make_event, published):
        await _seed_account(session_factory)
        payout = {"id": "po_1", "object": "payout", "amount": 12500, "currency": "usd",
                  "status": "paid", "arrival_date": T0}
        await handle_payout_paid(ctx, make_event("payout.paid", payout, account="acct_1", created=T0))

        async with session_factory() as db:
            row = (await db.execute(select(Payout).where(Payout.stripe_payout_id == "po_1"))).scalar_one()
        assert row.status == "paid"
        assert row.paid_at is not None
        assert row.organization_id == "org-1"

        events = await published(EventType.PAYOUT_PAID)
        assert events[0].payload["amount"] == 12500
        assert events[0].payload["arrival_date"] is not None

    async def test_failed(self, ctx, make_event, published):
        payout = {"id": "po_2", "amount": 100, "currency": "usd", "status": "failed",
                  "failure_code": "account_closed", "failure_message": "Closed"}
        await handle_payout_failed(ctx, make_event("payout.failed", payout, account="acct_1"))

        events = await published(EventType.PAYOUT_FAILED)
        assert events[0].payload["failure_code"] == "account_closed"

    async def test_redelivery_publishes_once(self, ctx, make_event, published):
        event = make_event("payout.paid", {"id": "po_3", "amount": 1, "currency": "usd", "status": "paid"})
        await handle_payout_paid(ctx, event)
        await handle_payout_paid(ctx, event)
        assert len(await published(EventType.PAYOUT_PAID)) == 1
