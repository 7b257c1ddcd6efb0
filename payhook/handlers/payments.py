"""
Payment lifecycle handlers: payment intents, charges and payouts on
connected accounts.
"""
import logging
from typing import Optional

from sqlalchemy import select

from payhook.handlers.common import (
    HandlerContext,
    event_object,
    event_time,
    from_timestamp,
    is_stale,
    organization_from_metadata,
)
from payhook.models.connected_account import ConnectedAccount
from payhook.models.payment_intent import PaymentIntent
from payhook.models.payout import Payout
from payhook.services.event_bus import EventType

logger = logging.getLogger(__name__)


def _connected_account_id(event: dict, obj: dict) -> Optional[str]:
    """Direct charges arrive with event.account; destination charges name it on the object."""
    if event.get("account"):
        return event["account"]
    if obj.get("on_behalf_of"):
        return obj["on_behalf_of"]
    return (obj.get("transfer_data") or {}).get("destination")


async def _organization_for(db, stripe_account_id: Optional[str], obj: dict) -> Optional[str]:
    organization_id = organization_from_metadata(obj)
    if organization_id or not stripe_account_id:
        return organization_id
    result = await db.execute(
        select(ConnectedAccount.organization_id)
        .where(ConnectedAccount.stripe_account_id == stripe_account_id)
    )
    return result.scalar_one_or_none()


async def _find_intent(db, stripe_payment_intent_id: str) -> Optional[PaymentIntent]:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.stripe_payment_intent_id == stripe_payment_intent_id)
    )
    return result.scalar_one_or_none()


async def _upsert_intent(ctx: HandlerContext, event: dict, apply) -> Optional[dict]:
    """
    Load-or-create the payment intent row, skip stale events, apply the
    event-specific changes, and return the domain event payload (None if skipped).
    """
    intent = event_object(event)
    event_at = event_time(event)
    stripe_account_id = _connected_account_id(event, intent)

    async with ctx.session_factory() as db:
        row = await _find_intent(db, intent["id"])
        if row is None:
            row = PaymentIntent(stripe_payment_intent_id=intent["id"], status=intent.get("status", "unknown"))
            db.add(row)
        elif is_stale(row.last_event_at, event_at):
            logger.info("Skipping stale %s for %s", event["type"], intent["id"])
            return None

        row.organization_id = row.organization_id or await _organization_for(db, stripe_account_id, intent)
        row.stripe_account_id = row.stripe_account_id or stripe_account_id
        row.amount = intent.get("amount") or 0
        row.currency = intent.get("currency") or row.currency or "usd"
        row.status = intent.get("status", row.status)
        row.customer_email = intent.get("receipt_email") or row.customer_email
        row.intent_metadata = intent.get("metadata") or {}
        apply(row, intent, event_at)
        row.last_event_at = event_at

        payload = {
            "payment_intent_id": intent["id"],
            "stripe_account_id": row.stripe_account_id,
            "amount": row.amount,
            "currency": row.currency,
            "status": row.status,
            "customer_email": row.customer_email,
            "receipt_url": row.receipt_url,
            "failure_code": row.failure_code,
            "failure_message": row.failure_message,
            "organization_id": row.organization_id,
        }
        await db.commit()

    return payload


async def handle_payment_intent_succeeded(ctx: HandlerContext, event: dict) -> None:
    def apply(row, intent, event_at):
        row.status = "succeeded"
        row.amount_received = intent.get("amount_received") or intent.get("amount")
        row.stripe_charge_id = intent.get("latest_charge") or row.stripe_charge_id
        row.failure_code = None
        row.failure_message = None
        row.succeeded_at = row.succeeded_at or event_at

    payload = await _upsert_intent(ctx, event, apply)
    if payload is None:
        return
    logger.info(
        "Payment received: %s %s %s", payload["payment_intent_id"], payload["amount"], payload["currency"],
    )
    await ctx.publish(event, EventType.PAYMENT_RECEIVED, payload, organization_id=payload["organization_id"])


async def handle_payment_intent_failed(ctx: HandlerContext, event: dict) -> None:
    def apply(row, intent, event_at):
        error = intent.get("last_payment_error") or {}
        row.failure_code = error.get("decline_code") or error.get("code")
        row.failure_message = error.get("message")

    payload = await _upsert_intent(ctx, event, apply)
    if payload is None:
        return
    logger.warning(
        "Payment failed: %s code=%s", payload["payment_intent_id"], payload["failure_code"],
    )
    await ctx.publish(event, EventType.PAYMENT_FAILED, payload, organization_id=payload["organization_id"])


async def handle_payment_intent_canceled(ctx: HandlerContext, event: dict) -> None:
    def apply(row, intent, event_at):
        row.status = "canceled"
        row.canceled_at = from_timestamp(intent.get("canceled_at")) or event_at

    payload = await _upsert_intent(ctx, event, apply)
    if payload is None:
        return
    payload["cancellation_reason"] = event_object(event).get("cancellation_reason")
    await ctx.publish(event, EventType.PAYMENT_CANCELED, payload, organization_id=payload["organization_id"])


async def handle_charge_succeeded(ctx: HandlerContext, event: dict) -> None:
    """Attach the charge and receipt to its payment intent. Status stays with payment_intent.* events."""
    charge = event_object(event)
    intent_id = charge.get("payment_intent")
    if not intent_id:
        logger.info("charge.succeeded without payment intent: %s", charge["id"])
        return

    stripe_account_id = _connected_account_id(event, charge)
    async with ctx.session_factory() as db:
        row = await _find_intent(db, intent_id)
        if row is None:
            row = PaymentIntent(
                stripe_payment_intent_id=intent_id,
                status="processing",
                amount=charge.get("amount") or 0,
                currency=charge.get("currency") or "usd",
                stripe_account_id=stripe_account_id,
                organization_id=await _organization_for(db, stripe_account_id, charge),
            )
            db.add(row)

        row.stripe_charge_id = charge["id"]
        row.receipt_url = charge.get("receipt_url") or row.receipt_url
        row.customer_email = (
            row.customer_email
            or charge.get("receipt_email")
            or (charge.get("billing_details") or {}).get("email")
        )
        await db.commit()

    logger.info("Charge %s attached to payment intent %s", charge["id"], intent_id)


async def _upsert_payout(ctx: HandlerContext, event: dict) -> Optional[dict]:
    payout = event_object(event)
    event_at = event_time(event)
    stripe_account_id = event.get("account")

    async with ctx.session_factory() as db:
        result = await db.execute(select(Payout).where(Payout.stripe_payout_id == payout["id"]))
        row = result.scalar_one_or_none()
        if row is None:
            row = Payout(stripe_payout_id=payout["id"], status=payout.get("status", "pending"))
            db.add(row)
        elif is_stale(row.last_event_at, event_at):
            logger.info("Skipping stale %s for %s", event["type"], payout["id"])
            return None

        row.organization_id = row.organization_id or await _organization_for(db, stripe_account_id, payout)
        row.stripe_account_id = row.stripe_account_id or stripe_account_id
        row.amount = payout.get("amount") or 0
        row.currency = payout.get("currency") or "usd"
        row.status = payout.get("status", row.status)
        row.arrival_date = from_timestamp(payout.get("arrival_date"))
        row.failure_code = payout.get("failure_code")
        row.failure_message = payout.get("failure_message")
        if row.status == "paid":
            row.paid_at = row.paid_at or event_at
        row.last_event_at = event_at

        payload = {
            "payout_id": payout["id"],
            "stripe_account_id": row.stripe_account_id,
            "amount": row.amount,
            "currency": row.currency,
            "status": row.status,
            "arrival_date": row.arrival_date.isoformat() if row.arrival_date else None,
            "failure_code": row.failure_code,
            "failure_message": row.failure_message,
            "organization_id": row.organization_id,
        }
        await db.commit()

    return payload


async def handle_payout_paid(ctx: HandlerContext, event: dict) -> None:
    payload = await _upsert_payout(ctx, event)
    if payload is None:
        return
    await ctx.publish(event, EventType.PAYOUT_PAID, payload, organization_id=payload["organization_id"])


async def handle_payout_failed(ctx: HandlerContext, event: dict) -> None:
    payload = await _upsert_payout(ctx, event)
    if payload is None:
        return
    logger.warning("Payout failed: %s code=%s", payload["payout_id"], payload["failure_code"])
    await ctx.publish(event, EventType.PAYOUT_FAILED, payload, organization_id=payload["organization_id"])


async def handle_payout_canceled(ctx: HandlerContext, event: dict) -> None:
    payload = await _upsert_payout(ctx, event)
    if payload is not None:
        logger.info("Payout canceled: %s", payload["payout_id"])
